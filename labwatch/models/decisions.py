"""Alert decisions returned by the evaluator, one per check.

Decisions are plain values; persisting them is the caller's job.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .alert import Alert, AlertSeverity, CheckKind


class _Decision(BaseModel):
    model_config = {"frozen": True}

    check_kind: Optional[CheckKind] = None


class NoAction(_Decision):
    """Nothing to persist for this check."""

    action: Literal["no_action"] = "no_action"
    reason: str = ""


class Raise(_Decision):
    """Create a new alert.

    ``supersedes`` names an open alert on the same check whose alert type no
    longer applies (for example a low temperature alert when the room is now
    too hot); it must be resolved when the new alert is created.
    """

    action: Literal["raise"] = "raise"
    alert: Alert
    supersedes: Optional[str] = None


class Escalate(_Decision):
    """Raise the severity of an open alert in place."""

    action: Literal["escalate"] = "escalate"
    alert_id: str
    new_severity: AlertSeverity
    message: str
    triggering_value: Optional[str] = None
    triggered_at: datetime


class Resolve(_Decision):
    """Close an open alert whose check is back in the normal range."""

    action: Literal["resolve"] = "resolve"
    alert_id: str


class InvalidReading(_Decision):
    """A check could not run because a required value is missing or not numeric."""

    action: Literal["invalid_reading"] = "invalid_reading"
    field: str
    detail: str


AlertDecision = Annotated[
    Union[NoAction, Raise, Escalate, Resolve, InvalidReading],
    Field(discriminator="action"),
]
