class QualityGateError(Exception):
    """Base error for the quality gate."""


class ConfigurationError(QualityGateError):
    """Malformed config file, step list or scope. Raised before any step runs."""


class InvocationError(QualityGateError):
    """An external tool could not be located or started."""

    def __init__(self, program: str, reason: str, missing: bool = False):
        super().__init__(f"{program}: {reason}")
        self.program = program
        self.reason = reason
        self.missing = missing
