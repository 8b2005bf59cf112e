"""Errors the orchestrator reports to its callers.

Guard errors mean "do not run an automated turn"; retryable errors mean
"nothing was changed, try again"; PersistenceError means the turn was
rolled back and must not be reported as sent.
"""


class OrchestratorError(Exception):
    retryable = False


# Guards: raised before any generation call

class ContactNotFound(OrchestratorError):
    def __init__(self, contact_id: str):
        super().__init__(f"Contact not found: {contact_id}")
        self.contact_id = contact_id


class ContactOptedOut(OrchestratorError):
    def __init__(self, contact_id: str):
        super().__init__(f"Contact has opted out: {contact_id}")
        self.contact_id = contact_id


class ContactHandedOff(OrchestratorError):
    def __init__(self, contact_id: str):
        super().__init__(f"Contact is already handed off to a human: {contact_id}")
        self.contact_id = contact_id


class WorkflowInactive(OrchestratorError):
    def __init__(self, workflow_id: str, status: str):
        super().__init__(f"Workflow {workflow_id} is not active ({status})")
        self.workflow_id = workflow_id


class DuplicateMessage(OrchestratorError):
    """The provider message id was already processed."""


class StaleMessage(OrchestratorError):
    """The message is older than the last processed turn for this contact."""


# Retryable

class GenerationError(OrchestratorError):
    """The generation provider failed or timed out."""
    retryable = True


class ConcurrentUpdate(OrchestratorError):
    """The stored context changed underneath this turn."""
    retryable = True


# Fatal to the turn

class PersistenceError(OrchestratorError):
    pass
