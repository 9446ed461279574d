"""Turns one "mailbox changed" push notification into at most one label action.

Each event walks a fixed path of states::

    RECEIVED -> RESOLVING -> FETCHING -> CLASSIFYING -> APPLYING -> DONE
                    |            |            |             |
                    +-> DONE     +------------+-------------+-> FAILED
                   (no new mail)

Only the first message added since the event's checkpoint is handled. A
dispatch never raises for per-event problems: the outcome says what happened
and the caller stays ready for the next event.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog

from .errors import EmptyContent, InvalidEvent

logger = structlog.get_logger(__name__)


class DispatchState(str, Enum):
    RECEIVED = "received"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


class FailureReason(str, Enum):
    HISTORY_UNAVAILABLE = "HistoryUnavailable"
    CONTENT_UNAVAILABLE = "ContentUnavailable"
    PREDICTION_UNAVAILABLE = "PredictionUnavailable"
    LABEL_NOT_APPLIED = "LabelNotApplied"


class MailSource(Protocol):
    def list_new_items_since(self, checkpoint: str) -> list[str]: ...

    def get_document_content(self, message_id: str) -> str | None: ...

    def apply_label(self, message_id: str, label_name: str) -> bool: ...


class Classifier(Protocol):
    def predict(self, text: str) -> str | None: ...


@dataclass(frozen=True)
class PushEvent:
    account: str
    """Mailbox address the notification is about."""

    checkpoint: str
    """Gmail historyId: new mail is measured from here."""

    @classmethod
    def from_pubsub(cls, body: Any) -> "PushEvent":
        """Decode a Pub/Sub push envelope ``{"message": {"data": <base64 JSON>}}``.

        Raises:
            InvalidEvent: the envelope or its payload is malformed.
        """
        try:
            data = body["message"]["data"]
            payload = json.loads(base64.b64decode(data, validate=False).decode("utf-8"))
            account = payload["emailAddress"]
            checkpoint = payload["historyId"]
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise InvalidEvent(f"Malformed push notification: {e}") from e
        if not account or checkpoint in (None, ""):
            raise InvalidEvent("Push notification is missing emailAddress or historyId.")
        return cls(account=str(account), checkpoint=str(checkpoint))


@dataclass
class DispatchOutcome:
    event: PushEvent
    state: DispatchState = DispatchState.RECEIVED
    path: list[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])
    message_id: str | None = None
    label: str | None = None
    applied: bool = False
    """False when the label doesn't exist in the mailbox (a no-op, not a failure)."""
    failure: FailureReason | None = None
    detail: str = ""

    @property
    def success(self) -> bool:
        return self.state is DispatchState.DONE

    def to(self, state: DispatchState) -> None:
        self.state = state
        self.path.append(state)

    def fail(self, reason: FailureReason, detail: str) -> "DispatchOutcome":
        self.failure = reason
        self.detail = detail
        self.to(DispatchState.FAILED)
        return self

    def to_ack(self) -> dict[str, Any]:
        """JSON acknowledgment for the push endpoint."""
        if self.failure is not None:
            return {"success": False, "error": self.failure.value, "message": self.detail}
        if self.message_id is None:
            return {"success": True, "message": self.detail}
        return {
            "success": True,
            "messageId": self.message_id,
            "predictedLabel": self.label,
            "applied": self.applied,
        }


class Dispatcher:
    """Resolves push events against a MailSource and files mail with a Classifier.

    Holds no per-event state, so one instance serves concurrent events.
    """

    def __init__(self, source: MailSource, classifier: Classifier) -> None:
        self._source = source
        self._classifier = classifier

    def dispatch(self, event: PushEvent) -> DispatchOutcome:
        outcome = DispatchOutcome(event=event)
        log = logger.bind(account=event.account, checkpoint=event.checkpoint)
        log.info("notification_received")

        outcome.to(DispatchState.RESOLVING)
        try:
            new_ids = self._source.list_new_items_since(event.checkpoint)
        except Exception as e:
            log.exception("history_lookup_failed")
            return outcome.fail(FailureReason.HISTORY_UNAVAILABLE, f"History lookup failed: {e}")
        if not new_ids:
            log.info("no_new_messages")
            outcome.detail = "No new messages in history."
            outcome.to(DispatchState.DONE)
            return outcome

        message_id = outcome.message_id = new_ids[0]
        log = log.bind(message_id=message_id)

        outcome.to(DispatchState.FETCHING)
        try:
            content = self._source.get_document_content(message_id)
        except Exception as e:
            log.exception("content_fetch_failed")
            return outcome.fail(FailureReason.CONTENT_UNAVAILABLE, f"Content fetch failed: {e}")
        if not content or not content.strip():
            log.warning("content_unavailable")
            return outcome.fail(FailureReason.CONTENT_UNAVAILABLE, "Content fetch failed.")

        outcome.to(DispatchState.CLASSIFYING)
        try:
            label = self._classifier.predict(content)
        except EmptyContent:
            log.warning("content_has_no_words")
            return outcome.fail(FailureReason.CONTENT_UNAVAILABLE, "Message has no classifiable text.")
        if label is None:
            log.warning("prediction_unavailable")
            return outcome.fail(FailureReason.PREDICTION_UNAVAILABLE, "Prediction failed.")
        outcome.label = label
        log = log.bind(label=label)
        log.info("label_predicted")

        outcome.to(DispatchState.APPLYING)
        try:
            outcome.applied = bool(self._source.apply_label(message_id, label))
        except Exception as e:
            log.exception("label_apply_failed")
            return outcome.fail(FailureReason.LABEL_NOT_APPLIED, f"Applying label failed: {e}")

        outcome.to(DispatchState.DONE)
        log.info("dispatch_done", applied=outcome.applied)
        return outcome
