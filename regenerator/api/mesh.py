from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from .config import ScoringPolicy
from .health import calculate_scores, extract_metrics
from .models import PageRecord
from .tokens import relevance, tokenize

logger = logging.getLogger("regenerator.mesh")

DEFAULT_MESH_SIZE = 50

BUILD_MESH = "BUILD_MESH"
MESH_RESULT = "MESH_RESULT"
ANALYZE_HEALTH = "ANALYZE_HEALTH"
HEALTH_RESULT = "HEALTH_RESULT"
WORKER_ERROR = "WORKER_ERROR"


class MeshError(RuntimeError):
    pass


@dataclass(frozen=True)
class SemanticNode:
    id: int
    title: str
    url: str
    tokens: FrozenSet[str] = field(default_factory=frozenset)
    relevance: float = 0.0


def build_node(page: PageRecord) -> SemanticNode:
    return SemanticNode(
        id=page.id,
        title=page.title,
        url=page.link,
        tokens=frozenset(tokenize(f"{page.title} {page.slug}")),
    )


def build_mesh(pages: Iterable[PageRecord]) -> List[SemanticNode]:
    return [build_node(page) for page in pages]


def find_neighbors(
    target_id: int,
    target_title: str,
    nodes: Sequence[SemanticNode],
    k: int = DEFAULT_MESH_SIZE,
) -> List[SemanticNode]:
    """Rank every other node by token overlap with the target title.

    Nodes without any overlap are used as backfill, in inventory order
    (the content store lists newest first), until ``k`` slots are filled.
    The returned nodes are copies carrying the per-query relevance.
    """
    target_tokens = tokenize(target_title)
    scored = [
        replace(node, relevance=relevance(target_tokens, node.tokens))
        for node in nodes
        if node.id != target_id
    ]
    ranked = sorted((node for node in scored if node.relevance > 0), key=lambda n: n.relevance, reverse=True)
    if len(ranked) < k:
        chosen = {node.id for node in ranked}
        ranked.extend(node for node in scored if node.id not in chosen)
    return ranked[:k]


def format_inventory(nodes: Sequence[SemanticNode], limit: int = 30) -> str:
    return "\n".join(f"ID: {node.id} | Title: {node.title}" for node in nodes[:limit])


def handle_message(message: Dict[str, Any], policy: Optional[ScoringPolicy] = None) -> Dict[str, Any]:
    message_type = message.get("type")
    if message_type == BUILD_MESH:
        pages = [PageRecord(**item) for item in message.get("pages") or []]
        return {"type": MESH_RESULT, "nodes": build_mesh(pages)}
    if message_type == ANALYZE_HEALTH:
        page = PageRecord(**message["page"])
        metrics = extract_metrics(page.html, page.modified, message.get("site_url") or "", now=message.get("now"))
        scores = calculate_scores(metrics, policy or ScoringPolicy())
        return {"type": HEALTH_RESULT, "page_id": page.id, "metrics": metrics, "scores": scores}
    raise MeshError(f"Unknown worker message type: {message_type!r}")


class MeshWorker:
    """Background thread for mesh building and health scanning.

    Callers exchange plain message dicts with the thread; page payloads are
    copied into the request so nothing mutable is shared.
    """

    def __init__(self, policy: Optional[ScoringPolicy] = None):
        self._policy = policy or ScoringPolicy()
        self._requests: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        logger.info("mesh.worker.start")
        self._thread = threading.Thread(target=self._run, name="mesh-worker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread and self._thread.is_alive():
            self._requests.put(None)
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("mesh.worker.stop")

    def request(self, message: Dict[str, Any], timeout: Optional[float] = 300) -> Dict[str, Any]:
        if not self._thread or not self._thread.is_alive():
            self.start()
        reply: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=1)
        self._requests.put((message, reply))
        try:
            response = reply.get(timeout=timeout)
        except queue.Empty as exc:
            raise MeshError(f"Worker did not answer {message.get('type')} in time.") from exc
        if response.get("type") == WORKER_ERROR:
            raise MeshError(response.get("error") or "Worker failed.")
        return response

    def build_mesh(self, pages: Sequence[PageRecord]) -> List[SemanticNode]:
        response = self.request({"type": BUILD_MESH, "pages": [page.model_dump() for page in pages]})
        return list(response["nodes"])

    def analyze_health(
        self,
        page: PageRecord,
        site_url: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return self.request(
            {"type": ANALYZE_HEALTH, "page": page.model_dump(), "site_url": site_url, "now": now}
        )

    def _run(self) -> None:
        while True:
            item = self._requests.get()
            if item is None:
                break
            message, reply = item
            try:
                response = handle_message(message, self._policy)
            except Exception as exc:
                logger.exception("mesh.worker.message_failed type=%s", message.get("type"))
                response = {"type": WORKER_ERROR, "error": f"{exc.__class__.__name__}: {exc}"}
            reply.put(response)
