"""Custom exception hierarchy for the workflow orchestrator."""


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""


class InteractionError(OrchestratorError):
    """Operator response does not answer the pending interaction."""

    def __init__(self, interaction_id: str, message: str):
        self.interaction_id = interaction_id
        super().__init__(message)


class WorkflowCancelledError(OrchestratorError):
    """The run was cancelled while an agent was working."""


class AgentNotFoundError(OrchestratorError):
    """No agent profile with the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Agent not found: {name}")


class PlanParseError(OrchestratorError):
    """Plan text yielded no tasks."""


class StateCorruptionError(OrchestratorError):
    """State file content is not a valid workflow state."""
