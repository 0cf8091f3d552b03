"""Conflict resolution policies, one per strategy.

The resolver only looks a policy up by strategy and calls ``resolve``, so a
richer merge can be registered without touching its control flow.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional

from app.core.exceptions import UnsupportedStrategyError
from app.schemas.sync import (
    ConflictResolution,
    MessageSnapshot,
    ResolutionStrategy,
    ServerVersion,
)


class ResolutionPolicy(ABC):
    strategy: ResolutionStrategy

    @abstractmethod
    def resolve(self, conflict: ConflictResolution) -> Optional[ServerVersion]:
        """Return the accepted version of the message, or None to leave the log untouched"""

    def _require_message(self, conflict: ConflictResolution) -> MessageSnapshot:
        if not isinstance(conflict.server_version, MessageSnapshot):
            raise UnsupportedStrategyError(
                f"Strategy {self.strategy.value} cannot resolve a {conflict.conflict_type.value} "
                f"without a server message"
            )
        return conflict.server_version


class ServerWinsPolicy(ResolutionPolicy):
    strategy = ResolutionStrategy.SERVER_WINS

    def resolve(self, conflict):
        return conflict.server_version


class ClientWinsPolicy(ResolutionPolicy):
    """Client fields that were set overlay the server snapshot"""
    strategy = ResolutionStrategy.CLIENT_WINS

    def resolve(self, conflict):
        server = self._require_message(conflict)
        overrides = conflict.client_version.model_dump(exclude_none=True)
        return server.model_copy(update=overrides)


class ContentMergePolicy(ResolutionPolicy):
    """Field-level merge limited to message content.

    A client content that differs from the server's replaces it; every other
    field keeps the server value.
    """
    strategy = ResolutionStrategy.MERGE

    def resolve(self, conflict):
        server = self._require_message(conflict)
        client_content = conflict.client_version.content
        if client_content and client_content != server.content:
            return server.model_copy(update={"content": client_content})
        return server


DEFAULT_POLICIES: Dict[ResolutionStrategy, ResolutionPolicy] = {
    policy.strategy: policy
    for policy in (ServerWinsPolicy(), ClientWinsPolicy(), ContentMergePolicy())
}
