"""Exception hierarchy and process exit codes."""

# Process exit codes. Stable: service units and wrappers rely on them.
EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_BIND_FAILURE = 2
EXIT_NO_COLLECTORS = 3
EXIT_RENDER_FAILURE = 4


class SyswatchError(Exception):
    """Base class for all syswatch errors."""


class ConfigError(SyswatchError):
    """Configuration could not be loaded or failed validation."""


class SourceUnavailableError(SyswatchError):
    """A data source subsystem (e.g. the NVML driver) is not present."""


class DeviceQueryError(SyswatchError):
    """A query against one device failed."""


class CounterNotSupportedError(DeviceQueryError):
    """The device does not implement the requested counter."""


class RenderError(SyswatchError):
    """A snapshot could not be rendered into the exposition format."""


class StartupError(SyswatchError):
    """Fatal startup condition; carries the process exit code."""

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code
