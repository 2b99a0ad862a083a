"""Discussion comments on approval requests.

Comments are conversation, not decisions: they never affect step
evaluation and may be posted in any request status.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestComment:
    request_id: str
    author_id: str
    content: str
    parent_id: Optional[str] = None
    mentions: Tuple[str, ...] = ()
    comment_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "comment_id": self.comment_id,
            "request_id": self.request_id,
            "author_id": self.author_id,
            "content": self.content,
            "parent_id": self.parent_id,
            "mentions": list(self.mentions),
            "created_at": self.created_at.isoformat(),
        }


class CommentThread:
    """Posts and lists comments for requests."""

    def __init__(self, store, max_length: int = 5000):
        self._store = store
        self._max_length = max_length

    def post(
        self,
        request_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
        mentions: Iterable[str] = (),
    ) -> RequestComment:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Comment content is required", field="content")
        if len(text) > self._max_length:
            raise ValidationError(
                f"Comment exceeds {self._max_length} characters", field="content",
            )

        if parent_id is not None:
            parent = self._store.get_comment(parent_id)
            if parent is None or parent.request_id != request_id:
                raise NotFoundError(
                    f"Parent comment {parent_id} not found on request {request_id}",
                    resource_type="comment",
                    resource_id=parent_id,
                )

        comment = RequestComment(
            request_id=request_id,
            author_id=author_id,
            content=text,
            parent_id=parent_id,
            mentions=tuple(dict.fromkeys(m for m in mentions if m)),
        )
        self._store.insert_comment(comment)
        logger.info("Comment %s posted on request %s by %s",
                    comment.comment_id, request_id, author_id)
        return comment

    def list(self, request_id: str) -> List[RequestComment]:
        """Comments on *request_id*, oldest first."""
        return sorted(self._store.list_comments(request_id), key=lambda c: c.created_at)
