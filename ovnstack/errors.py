"""
ovnstack Error Hierarchy

Unified exception hierarchy for the bring-up/teardown orchestrator.
All custom exceptions inherit from OvnStackError so the CLI can catch
one type and exit non-zero.

Usage:
    from ovnstack.errors import LaunchError, ReadinessTimeoutError

    try:
        orchestrator.start_stores()
    except ReadinessTimeoutError as e:
        logger.error(f"{e.message} after {e.context['timeout_seconds']}s")
"""

from typing import Any

__all__ = [
    # Bring-up errors
    "BootstrapError",
    "CommandError",
    # Configuration errors
    "ConfigConflictError",
    "ConfigurationError",
    "LaunchError",
    # Base error
    "OvnStackError",
    "ReadinessTimeoutError",
    # Teardown errors
    "TeardownError",
]


class OvnStackError(Exception):
    """Base exception for all ovnstack errors.

    ``code`` categorizes the failure for callers and logs. ``context``
    holds the values needed to diagnose it. ``fatal`` says whether the
    failure stops the bring-up; teardown failures are the only errors
    that are collected instead of raised.

    Subclasses list their own attributes in ``exported`` so ``to_dict``
    carries them alongside the context.
    """
    code: str = "OVNSTACK_ERROR"
    fatal: bool = True
    exported: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = dict(context or {})

    def __str__(self) -> str:
        details = "; ".join(f"{key}={value}" for key, value in self.context.items())
        text = f"{self.code}: {self.message}"
        return f"{text} [{details}]" if details else text

    def to_dict(self) -> dict[str, Any]:
        """Serializable view, including the subclass attributes."""
        data: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "fatal": self.fatal,
            "message": self.message,
        }
        for name in self.exported:
            data[name] = getattr(self, name)
        data["context"] = dict(self.context)
        return data


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(OvnStackError):
    """Invalid configuration.

    Raised before any process is touched: unparseable values, an invalid
    preset system id, unresolvable or cyclic service dependencies.
    """
    code: str = "CONFIGURATION_ERROR"


class ConfigConflictError(ConfigurationError):
    """Mutually exclusive settings enabled together.

    Attributes:
        settings: Names of the conflicting settings
    """
    code: str = "CONFIG_CONFLICT"
    exported = ("settings",)

    def __init__(
        self,
        message: str,
        settings: tuple[str, ...] = (),
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.settings = settings
        if settings:
            self.context["settings"] = ",".join(settings)


# =============================================================================
# Command Errors
# =============================================================================


class CommandError(OvnStackError):
    """External command failed or could not be executed.

    Attributes:
        command: The argv that was run
        exit_code: Process exit status, None when the command never started
    """
    code: str = "COMMAND_ERROR"
    exported = ("command", "exit_code")

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.command = list(command or [])
        self.exit_code = exit_code
        if command:
            self.context["command"] = " ".join(command)
        if exit_code is not None:
            self.context["exit_code"] = exit_code
        if stderr:
            self.context["stderr"] = stderr.strip()[-400:]


# =============================================================================
# Bring-up Errors
# =============================================================================


class BootstrapError(OvnStackError):
    """A backing store could not be (re)created.

    Fatal: every later step depends on the stores existing.
    """
    code: str = "BOOTSTRAP_ERROR"
    exported = ("store_path",)

    def __init__(
        self,
        message: str,
        store_path: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.store_path = store_path
        if store_path:
            self.context["store_path"] = store_path


class LaunchError(OvnStackError):
    """A daemon command could not be started. Not retried."""
    code: str = "LAUNCH_ERROR"
    exported = ("service",)

    def __init__(
        self,
        message: str,
        service: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.service = service
        if service:
            self.context["service"] = service


class ReadinessTimeoutError(OvnStackError):
    """A daemon started but never signalled readiness in time.

    Distinct from LaunchError: the process did start.
    """
    code: str = "READINESS_TIMEOUT"
    exported = ("attempts",)

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        attempts: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.attempts = attempts
        if timeout_seconds is not None:
            self.context["timeout_seconds"] = timeout_seconds
        if attempts is not None:
            self.context["attempts"] = attempts


# =============================================================================
# Teardown Errors
# =============================================================================


class TeardownError(OvnStackError):
    """A stop command failed.

    Never raised out of teardown; instances are collected in the
    TeardownReport and logged as warnings.
    """
    code: str = "TEARDOWN_ERROR"
    fatal = False
    exported = ("service",)

    def __init__(
        self,
        message: str,
        service: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.service = service
        if service:
            self.context["service"] = service
