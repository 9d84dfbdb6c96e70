"""
Outside collaborators: where finished results are stored, and who else is
asked for an opinion.

Both are interfaces only; the engine never depends on a concrete store or
reviewer, and nothing here keeps state between runs.
"""


from dataclasses import dataclass, field
from typing import Any, Protocol

from . import annotations
from .models import AnalysisContext, AnalysisResult
from .serialization import finding_to_dict, flatten_result


class PersistenceSink(Protocol):
    def save(self, record: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class PeerReviewRequest:
    """What a second-opinion reviewer is given."""
    summary: str
    risks: list[dict[str, Any]] = field(default_factory=list)
    ticket: str | None = None
    title: str = ""


class PeerReviewCollaborator(Protocol):
    def review(self, request: PeerReviewRequest) -> Any:
        ...


def publish_result(
    sink: PersistenceSink,
    result: AnalysisResult,
    context: AnalysisContext | None = None,
    author: str | None = None,
) -> dict[str, Any]:
    """Flatten a result and hand it to the sink. Sink errors propagate."""
    record = flatten_result(result, context, author=author)
    sink.save(record)
    return record


def build_peer_review_request(result: AnalysisResult, ticket: str | None = None, title: str = "") -> PeerReviewRequest:
    return PeerReviewRequest(
        summary=result.summary,
        risks=[finding_to_dict(f) for f in result.findings],
        ticket=ticket,
        title=title,
    )


def request_peer_review(
    collaborator: PeerReviewCollaborator,
    result: AnalysisResult,
    ticket: str | None = None,
    title: str = "",
) -> Any | None:
    """
    Ask a collaborator for a second opinion.

    The verdict is opaque and optional: a failing collaborator is reported
    and yields None instead of failing the run.
    """
    request = build_peer_review_request(result, ticket=ticket, title=title)
    try:
        return collaborator.review(request)
    except Exception as exc:
        annotations.warn(f"Peer review unavailable: {exc}")
        return None
