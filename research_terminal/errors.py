from typing import Optional


class TerminalError(Exception):
    """Base for errors that are reported back to the operator."""


class ValidationError(TerminalError):
    pass


class InvalidService(ValidationError):
    pass


class AuthError(TerminalError):
    pass


class UserNotFound(AuthError):
    pass


class WrongPassword(AuthError):
    pass


class RateLimited(AuthError):
    pass


class ConfigError(TerminalError):
    pass


class MissingApiKey(ConfigError):
    pass


class NotConfigured(ConfigError):
    pass


class ProviderError(TerminalError):
    def __init__(self, message: str, status: Optional[int] = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.transient = transient


class ProviderTimeout(ProviderError):
    def __init__(self, message: str = "Provider call timed out.") -> None:
        super().__init__(message, status=None, transient=True)


class DecryptionFailed(TerminalError):
    pass


class AuthTagMismatch(DecryptionFailed):
    pass


class KeyMigrationFailed(TerminalError):
    pass


class PromptError(TerminalError):
    pass


class PromptTimeout(PromptError):
    pass


class PromptReplaced(PromptError):
    pass


class PromptCancelled(PromptError):
    pass


class TransportClosed(PromptError):
    pass


class RunCancelled(TerminalError):
    pass


class ResearchFailed(TerminalError):
    pass
