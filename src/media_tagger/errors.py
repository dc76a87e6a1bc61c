"""Exception hierarchy shared by the store, the analyzer and the orchestrator."""


class MediaTaggerError(Exception):
    """Base class for every error raised by media-tagger."""


class StorageError(MediaTaggerError):
    """The object store could not be reached or refused the operation."""


class ExistenceCheckError(StorageError):
    """Probing for an existing metadata sidecar failed."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"existence check failed for {key}: {cause}")
        self.key = key


class ObjectMissingError(StorageError):
    """A listed object disappeared before its body could be fetched."""

    def __init__(self, key: str) -> None:
        super().__init__(f"object vanished before download: {key}")
        self.key = key


class AnalyzerError(MediaTaggerError):
    """The content analyzer failed or produced unusable output."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"analysis failed for {key}: {reason}")
        self.key = key
        self.reason = reason


class AnalyzerConfigError(MediaTaggerError):
    """The configured model or provider cannot be used."""
