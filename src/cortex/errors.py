"""Cortex error hierarchy.

Structured exception types for the automation engine. Step-level errors fail
a single run; store errors abort the event or run being processed.
"""

from __future__ import annotations


class CortexError(Exception):
    """Base error for all Cortex exceptions."""

    code = "CORTEX_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Storage Errors
class StoreUnavailableError(CortexError):
    """A backing store could not be reached or returned an error."""

    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str, store: str | None = None):
        super().__init__(message, {"store": store})
        self.store = store


# Definition Errors
class UnitValidationError(CortexError):
    """A unit definition is malformed."""

    code = "UNIT_VALIDATION"


class ExpressionError(CortexError):
    """A filter or condition expression is invalid or uses forbidden syntax."""

    code = "EXPRESSION"

    def __init__(self, message: str, expression: str | None = None):
        super().__init__(message, {"expression": expression})
        self.expression = expression


# Step Errors
class StepError(CortexError):
    """Base error for failures that abort a single run step."""

    code = "STEP_ERROR"


class TemplateResolutionError(StepError):
    """A ``{{placeholder}}`` could not be resolved against the run context."""

    code = "TEMPLATE_RESOLUTION"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, {"path": path})
        self.path = path


class ToolExecutionError(StepError):
    """The external tool executor reported a failure."""

    code = "TOOL_EXECUTION"

    def __init__(self, message: str, tool: str | None = None):
        super().__init__(message, {"tool": tool})
        self.tool = tool


class ActionError(StepError):
    """An action could not be carried out (bad config, missing collaborator)."""

    code = "ACTION"

    def __init__(self, message: str, action_type: str | None = None):
        super().__init__(message, {"action_type": action_type})
        self.action_type = action_type


# Collaborator Errors
class ClassifierUnavailableError(CortexError):
    """The semantic classifier failed or timed out."""

    code = "CLASSIFIER_UNAVAILABLE"
