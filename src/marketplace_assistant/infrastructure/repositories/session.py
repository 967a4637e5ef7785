"""Conversation session event-log repositories."""

from typing import Any

from neo4j import AsyncDriver

from marketplace_assistant.core.decorators import with_session
from marketplace_assistant.domain.models import SessionEvent, SessionEventKind
from marketplace_assistant.domain.models.utils import utc_now
from marketplace_assistant.infrastructure.neo4j.queries import SessionQueries
from marketplace_assistant.infrastructure.repositories._records import dumps, loads, to_native


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._events: dict[str, list[SessionEvent]] = {}

    async def append(self, owner_id: str, kind: str, payload: dict[str, Any]) -> SessionEvent:
        log = self._events.setdefault(owner_id, [])
        # Round-trip through JSON so stored payloads never alias caller objects
        event = SessionEvent(
            seq=len(log),
            owner_id=owner_id,
            kind=SessionEventKind(kind),
            payload=loads(dumps(payload), {}),
        )
        log.append(event)
        return event

    async def events(self, owner_id: str) -> list[SessionEvent]:
        return list(self._events.get(owner_id, []))


class Neo4jSessionRepository:
    def __init__(self, driver: AsyncDriver):
        self.driver = driver

    @staticmethod
    def _record_to_event(node: Any) -> SessionEvent:
        props = dict(node)
        return SessionEvent(
            seq=props["seq"],
            owner_id=props["owner_id"],
            kind=SessionEventKind(props["kind"]),
            payload=loads(props.get("payload_json"), {}),
            timestamp=to_native(props["timestamp"]),
        )

    @with_session()
    async def append(self, session, owner_id: str, kind: str, payload: dict[str, Any]) -> SessionEvent:
        result = await session.run(
            SessionQueries.append(),
            owner_id=owner_id,
            kind=SessionEventKind(kind).value,
            payload_json=dumps(payload),
            timestamp=utc_now(),
        )
        record = await result.single()
        return self._record_to_event(record["e"])

    @with_session()
    async def events(self, session, owner_id: str) -> list[SessionEvent]:
        result = await session.run(SessionQueries.events(), owner_id=owner_id)
        return [self._record_to_event(record["e"]) async for record in result]
