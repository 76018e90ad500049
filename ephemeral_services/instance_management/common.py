"""Exceptions and constants shared by the instance management modules."""

# Names of the provisioning steps, reported in `SetupError.step`
STEP_RUNTIME = "runtime"
STEP_LAUNCH = "launch"
STEP_EXPIRY = "expiry"
STEP_ENDPOINT = "endpoint"
STEP_READINESS = "readiness"
STEP_POST_START = "post-start"
STEP_TEMPLATE = "template"


class SetupError(Exception):
    """Starting of a service instance failed.

    The `step` attribute tells in which step of the provisioning the failure happened, so an
    infrastructure failure can be told apart from a failure in the caller's post-start hook.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"[{step}] {message}")
        self.step = step


class RuntimeUnavailableError(SetupError):
    """The container runtime is not reachable."""

    def __init__(self, message: str) -> None:
        super().__init__(step=STEP_RUNTIME, message=message)


class LaunchError(SetupError):
    pass


class ReadinessTimeoutError(SetupError):
    """The instance didn't become ready before the deadline."""

    def __init__(self, message: str) -> None:
        super().__init__(step=STEP_READINESS, message=message)


class PostStartError(SetupError):
    def __init__(self, message: str) -> None:
        super().__init__(step=STEP_POST_START, message=message)


class TemplateError(SetupError):
    def __init__(self, message: str) -> None:
        super().__init__(step=STEP_TEMPLATE, message=message)


class TeardownError(Exception):
    """Closing of an instance failed; the instance is left open and `close` can be retried."""


class CloneContractError(Exception):
    """Instance that is not a template was asked to act as one."""


class InstanceClosedError(Exception):
    """Lifecycle operation was requested on an instance that is already closed."""


class RecordNotFoundError(Exception):
    """Query expected to return a row returned nothing."""
