from __future__ import annotations


class NewsdeskError(Exception):
    pass


class ConfigError(NewsdeskError, ValueError):
    pass


class MissingCredentialError(ConfigError):
    pass


class FetchError(NewsdeskError):
    def __init__(self, source_id: str, message: str, http_status: int | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id
        self.http_status = http_status


class GenerationError(NewsdeskError):
    pass


class PublishError(NewsdeskError):
    pass


class ComponentUnavailableError(NewsdeskError):
    pass


class NotFoundError(NewsdeskError, LookupError):
    pass


class InvalidTransitionError(NewsdeskError):
    def __init__(self, draft_id: int, current: str, target: str) -> None:
        super().__init__(f"draft {draft_id}: cannot move from {current} to {target}")
        self.draft_id = draft_id
        self.current = current
        self.target = target
