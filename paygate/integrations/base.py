"""Collaborator contracts consumed by the reconciliation engine.

The engine never talks to a payment rail, compute backend or transport
directly; it calls these protocols. Every collaborator failure is raised as a
``CollaboratorError`` subclass so the engine can translate it into a state
transition at the call site.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from paygate.models.db.enums import FeedbackKind, PaymentStatus


class CollaboratorError(Exception):
    """Base class for failures reported by external collaborators."""

    def __init__(self, message: str, *, cause: BaseException | None = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}


class InvoiceError(CollaboratorError):
    """Payment request could not be created."""


class CheckError(CollaboratorError):
    """Settlement status could not be determined (transient)."""


class ExecutionError(CollaboratorError):
    """The paid computation failed."""


class PublishError(CollaboratorError):
    """A result could not be delivered to the requester."""


@dataclass(frozen=True)
class Invoice:
    payment_reference: str
    renderable_invoice: str
    amount_units: int


@dataclass(frozen=True)
class PaymentCheck:
    status: PaymentStatus
    amount_paid: Optional[int] = None


@runtime_checkable
class InvoiceIssuer(Protocol):
    def issue_invoice(self, amount_units: int, memo: str) -> Invoice: ...


@runtime_checkable
class PaymentStatusChecker(Protocol):
    def check_status(self, payment_reference: str) -> PaymentCheck: ...


@runtime_checkable
class JobExecutor(Protocol):
    def execute(self, request_payload: Mapping[str, Any]) -> str: ...


@runtime_checkable
class FeedbackPublisher(Protocol):
    def publish(self, job_id: str, kind: FeedbackKind, detail: Optional[str] = None) -> None: ...


@runtime_checkable
class ResultPublisher(Protocol):
    def publish_result(self, job_id: str, result_content: str, amount_units: int, payment_reference: Optional[str]) -> None: ...


__all__ = [
    "CollaboratorError",
    "InvoiceError",
    "CheckError",
    "ExecutionError",
    "PublishError",
    "Invoice",
    "PaymentCheck",
    "InvoiceIssuer",
    "PaymentStatusChecker",
    "JobExecutor",
    "FeedbackPublisher",
    "ResultPublisher",
]
