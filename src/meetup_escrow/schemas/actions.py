"""Tagged payloads for TransactionService.transition().

Each action has its own model with a Literal ``action`` discriminator and
``extra="forbid"``, so a payload carrying fields that belong to another
action (or a typo) is rejected before the state machine is consulted.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from meetup_escrow.domain.enums import DisputeOutcome, TransactionAction
from meetup_escrow.domain.exceptions import ValidationError


class _ActionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SubmitDepositPayload(_ActionPayload):
    action: Literal["submit_deposit"] = "submit_deposit"


class AcceptDepositPayload(_ActionPayload):
    action: Literal["accept_deposit"] = "accept_deposit"


class RejectDepositPayload(_ActionPayload):
    action: Literal["reject_deposit"] = "reject_deposit"
    reason: str | None = Field(default=None, max_length=1000)


class ScheduleMeetupPayload(_ActionPayload):
    action: Literal["schedule_meetup"] = "schedule_meetup"
    scheduled_meetup_at: AwareDatetime
    location: str | None = Field(default=None, max_length=500)


class StartMeetupPayload(_ActionPayload):
    action: Literal["start_meetup"] = "start_meetup"


class CompletePayload(_ActionPayload):
    action: Literal["complete"] = "complete"
    rating: int | None = Field(default=None, ge=1, le=10)
    comment: str | None = Field(default=None, max_length=2000)


class CancelPayload(_ActionPayload):
    action: Literal["cancel"] = "cancel"
    reason: str | None = Field(default=None, max_length=1000)


class RefundPayload(_ActionPayload):
    action: Literal["refund"] = "refund"
    reason: str | None = Field(default=None, max_length=1000)


class RaiseDisputePayload(_ActionPayload):
    action: Literal["raise_dispute"] = "raise_dispute"
    reason: str = Field(..., min_length=1, max_length=2000)


class ResolveDisputePayload(_ActionPayload):
    action: Literal["resolve_dispute"] = "resolve_dispute"
    outcome: DisputeOutcome


TransitionPayload = Annotated[
    SubmitDepositPayload
    | AcceptDepositPayload
    | RejectDepositPayload
    | ScheduleMeetupPayload
    | StartMeetupPayload
    | CompletePayload
    | CancelPayload
    | RefundPayload
    | RaiseDisputePayload
    | ResolveDisputePayload,
    Field(discriminator="action"),
]

_payload_adapter: TypeAdapter[TransitionPayload] = TypeAdapter(TransitionPayload)


def parse_transition_payload(action: str, payload: dict | None = None) -> TransitionPayload:
    """Validate a raw payload for the given action.

    The ``action`` argument wins over any ``action`` key inside the payload;
    a mismatch between the two is a validation error.

    Raises:
        ValidationError: If the action is unknown or the payload is malformed.
    """
    try:
        action_name = TransactionAction(action).value
    except ValueError:
        valid = ", ".join(a.value for a in TransactionAction)
        raise ValidationError(f"Unknown action '{action}'. Valid actions: {valid}") from None

    data = dict(payload or {})
    embedded = data.pop("action", action_name)
    if embedded != action_name:
        raise ValidationError(
            f"Payload action '{embedded}' does not match requested action '{action_name}'"
        )
    data["action"] = action_name

    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as exc:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid payload for {action_name}", errors=errors) from exc
