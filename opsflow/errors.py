""" Exception hierarchy for opsflow. """
from typing import Any, Optional


class OpsflowError(Exception):
    """ Base class for every error raised by the engine. """


class ManifestError(OpsflowError, ValueError):
    """ A manifest could not be parsed into a workflow definition. """


class WorkflowValidationError(OpsflowError, ValueError):
    """ A workflow failed the structural gate and cannot be activated. """

    def __init__(self, result: Any):
        self.result = result
        messages = "; ".join(issue.message for issue in result.errors)
        super().__init__(f"Workflow is invalid: {messages}")


class TemplateSyntaxError(OpsflowError, ValueError):
    def __init__(self, message: str, template: str = ""):
        self.template = template
        super().__init__(message)


class UnresolvedVariableError(OpsflowError, LookupError):
    """ A control-flow field referenced a variable that is not in the environment. """

    def __init__(self, expression: str, node_id: Optional[str] = None):
        self.expression = expression
        self.node_id = node_id
        where = f" in node {node_id}" if node_id else ""
        super().__init__(f"Unresolved variable '{expression}'{where}")


class NodeExecutionError(OpsflowError):
    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Node {node_id} failed: {message}")


class ActionNotFoundError(OpsflowError, LookupError):
    pass


class UnknownWorkflowError(OpsflowError, LookupError):
    pass


class RunNotFoundError(OpsflowError, LookupError):
    pass


class ResumeError(OpsflowError):
    """ A resumption token was unknown, stale, or not yet due. """
