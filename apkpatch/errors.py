"""Exception taxonomy. Everything raised on purpose derives from PatchError."""


class PatchError(Exception):
    """Base exception for all patching errors."""
    pass


class EntryNotFound(PatchError):
    """Raised when a named entry is missing from a zip container."""
    def __init__(self, name: str, container: str = "archive"):
        self.name = name
        super().__init__(f"{name!r} not found in {container}")


class MalformedArchive(PatchError):
    """Raised when a zip container cannot be parsed."""
    pass


class MalformedDocument(PatchError):
    """Raised when a proto XML buffer cannot be decoded."""
    def __init__(self, message: str, offset: int = -1):
        self.offset = offset
        if offset >= 0:
            message = f"{message} (at byte {offset})"
        super().__init__(message)


class ExternalToolError(PatchError):
    """Raised when the format converter fails or cannot be run."""
    def __init__(self, message: str, returncode: int = -1, output: str = ""):
        self.returncode = returncode
        self.output = output
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)


class AttributeNotFound(PatchError):
    """Raised in strict mode when a requested override has no target attribute."""
    pass
