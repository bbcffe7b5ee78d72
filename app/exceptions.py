"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class TrialSyncError(Exception):
    """Base exception for all trial and device sync errors."""

    pass


class InvalidFingerprintError(TrialSyncError):
    """Raised when a device fingerprint is structurally invalid."""

    def __init__(self, fingerprint: str, reason: str) -> None:
        self.fingerprint = fingerprint
        self.reason = reason
        super().__init__(f"Invalid fingerprint: {reason}")


class TrialStoreUnavailableError(TrialSyncError):
    """Raised by the durable trial store when the database cannot serve a call."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Trial store unavailable during {operation}: {reason}")


class DeviceRegistrationError(TrialSyncError):
    """Raised when a device cannot be registered for a user."""

    def __init__(self, user_id: str, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Device registration failed for user {user_id}: {reason}")


class SessionCreationError(TrialSyncError):
    """Raised when a device session cannot be created."""

    def __init__(self, device_id: UUID, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Session creation failed for device {device_id}: {reason}")


class DeviceLogoutError(TrialSyncError):
    """Raised when the sessions of a device cannot be terminated."""

    def __init__(self, device_id: UUID, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Logout failed for device {device_id}: {reason}")


class DeviceUpdateError(TrialSyncError):
    """Raised when a device attribute (e.g. trust) cannot be written."""

    def __init__(self, device_id: UUID, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device {device_id} update failed: {reason}")


class SessionUpdateError(TrialSyncError):
    """Raised when session activity or session cleanup cannot be written."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Session update failed during {operation}: {reason}")


class SyncEventUpdateError(TrialSyncError):
    """Raised when a sync event acknowledgement cannot be written."""

    def __init__(self, event_id: UUID, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Sync event {event_id} update failed: {reason}")


class DeviceNotFoundError(TrialSyncError):
    """Raised when a device doesn't exist (or belongs to another user)."""

    def __init__(self, device_id: UUID) -> None:
        self.device_id = device_id
        super().__init__(f"Device not found: {device_id}")


class SecurityAlertNotFoundError(TrialSyncError):
    """Raised when a security alert doesn't exist."""

    def __init__(self, alert_id: UUID) -> None:
        self.alert_id = alert_id
        super().__init__(f"Security alert not found: {alert_id}")


class SecurityAlertUpdateError(TrialSyncError):
    """Raised when a security alert state transition cannot be written."""

    def __init__(self, alert_id: UUID, reason: str) -> None:
        self.alert_id = alert_id
        self.reason = reason
        super().__init__(f"Security alert {alert_id} update failed: {reason}")


class SyncConfigUpdateError(TrialSyncError):
    """Raised when a user's sync configuration cannot be written."""

    def __init__(self, user_id: str, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Sync config update failed for user {user_id}: {reason}")


class AuthenticationError(TrialSyncError):
    """Raised when authentication fails (invalid API key, missing identity)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
