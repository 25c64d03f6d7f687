"""Typed application errors with user-facing messages."""

from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class NotInstalledError(AppError):
    def __init__(self) -> None:
        super().__init__(
            "Bypass service is not installed",
            user_message="Install the service first.",
        )


class BusyError(AppError):
    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Rejected {operation}: another control operation is in flight",
            user_message="Busy, try again in a moment.",
        )
        self.operation = operation


class LaunchFailedError(AppError):
    pass


class CommandFailedError(AppError):
    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        output: str = "",
        user_message: str | None = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.returncode = returncode
        self.output = output


class CommandTimeoutError(AppError):
    pass


class ProbeUnavailableError(AppError):
    pass


class ProxyAdapterError(AppError):
    pass


class ConfigWriteError(AppError):
    pass


class InstallError(AppError):
    pass
