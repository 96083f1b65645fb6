"""Exceptions raised inside a single queue-item execution."""


class ExecutionError(Exception):
    """Base class for failures that count against an item's attempts."""


class ContextLoadError(ExecutionError):
    """Conversation, appointment or agent could not be loaded."""


class ChannelUnavailableError(ExecutionError):
    """No connected WhatsApp instance for the company."""


class SendFailedError(ExecutionError):
    """The messaging gateway rejected or failed the send."""


class StatePersistError(ExecutionError):
    """The message went out but marking the item as sent failed."""


class GenerationError(Exception):
    """A personalization strategy failed; the chain falls through to the next one."""
