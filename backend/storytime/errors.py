class GraphIntegrityError(ValueError):
    """A scenario graph references a scenario key it does not define."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


class InvalidSelectionError(ValueError):
    """A choice was selected that the current state does not offer."""


class NoPreviousScenarioError(LookupError):
    """Back was requested with an empty navigation stack."""


class RemoteRequestError(RuntimeError):
    """The story generation service could not be reached."""


class RemoteFormatError(ValueError):
    """The story generation service returned an unusable payload."""

    def __init__(self, message: str, raw_snippet: str | None = None) -> None:
        super().__init__(message)
        self.raw_snippet = raw_snippet


class PersistenceError(RuntimeError):
    """A local story store could not be written."""


class AuthoringError(ValueError):
    """A user-authored story edit was rejected."""
