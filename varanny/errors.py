"""Exception hierarchy for varanny.

Every error raised by the launcher derives from VarannyError. Errors raised while a
client command runs are turned into ``ERROR <reason>`` replies by the session; the
message of the exception is the reason sent to the client.
"""


class VarannyError(Exception):
    """Base exception for all varanny errors."""


class ConfigError(VarannyError):
    """Startup configuration is missing, malformed or refers to missing files.

    Fatal: the service refuses to start.
    """


class ExecutableNotFound(VarannyError):
    """A modem or CAT control executable cannot be found on the search path."""


class SpawnFailed(VarannyError):
    """The operating system refused to start an external process."""


class ModemNotFound(VarannyError):
    """No modem with the requested name is configured."""

    def __init__(self, name: str):
        super().__init__(f"modem name '{name}' not found")
        self.name = name


class ModemBusy(VarannyError):
    """Another session already holds the modem."""

    def __init__(self, name: str):
        super().__init__(f"modem {name} is already running")
        self.name = name


class DeviceNotFound(VarannyError):
    """No capture device matches the configured audio input name."""

    def __init__(self, name: str):
        super().__init__(f"audio device '{name}' not found")
        self.name = name


class PortNotReady(VarannyError):
    """A started modem did not bind its port within the polling budget.

    Not fatal, the start completes anyway.
    """


class ConfigSwapError(VarannyError):
    """Backing up or installing a modem ini file failed."""


class ProtocolError(VarannyError):
    """A client sent a line that is not a known command."""
