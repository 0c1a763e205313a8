class LeadPipelineError(Exception):
    """Base class for every error raised by the lead decision core."""


class RuleValidationError(LeadPipelineError, ValueError):
    """A scoring or routing rule (or one of its conditions) is malformed."""


class ConfigError(LeadPipelineError, ValueError):
    """Team configuration could not be loaded or failed validation."""


class LeadRejectedError(LeadPipelineError):
    """The inbound lead failed validation and will not be processed."""


class PipelineError(LeadPipelineError):
    """The pipeline failed mid-run; the caller may retry the event."""


class StorageError(PipelineError):
    """The lead store could not complete a read or write."""


class LeadNotFoundError(StorageError, KeyError):
    """No lead exists with the requested id."""


class DuplicateKeyError(StorageError):
    """An identity key is already owned by another lead in the same team."""

    def __init__(self, key, owner_id: str):
        super().__init__(f"Identity key {key.kind}:{key.value} already belongs to lead {owner_id}")
        self.key = key
        self.owner_id = owner_id
