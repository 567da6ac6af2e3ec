import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import WebSocket
from starlette.concurrency import run_in_threadpool

from protocol import Outbound, recipients

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Live WebSockets by connection id; fans protocol output out to them."""

    def __init__(self):
        self.active: Dict[str, WebSocket] = {}
        self._order = asyncio.Lock()

    def add(self, conn_id: str, websocket: WebSocket) -> None:
        self.active[conn_id] = websocket

    def remove(self, conn_id: str) -> None:
        self.active.pop(conn_id, None)

    def __len__(self) -> int:
        return len(self.active)

    async def publish(
        self,
        sender_id: Optional[str],
        produce: Callable[..., Tuple[Any, List[Outbound]]],
        *args,
    ) -> Any:
        """
        Run ``produce(*args)`` on the threadpool and deliver the outbounds it
        returns, then hand back its result.

        ``produce`` returns ``(result, outbounds)``. Commits and their fan-out
        happen one publish at a time, so every connection receives snapshots
        in the order the store committed them.
        """
        async with self._order:
            result, outbounds = await run_in_threadpool(produce, *args)
            await self.deliver(sender_id, outbounds)
            return result

    async def deliver(self, sender_id: Optional[str], outbounds: Iterable[Outbound]) -> None:
        for out in outbounds:
            message = out.message()
            for conn_id in recipients(out.audience, sender_id, list(self.active)):
                websocket = self.active.get(conn_id)
                if websocket is None:
                    continue
                try:
                    await websocket.send_json(message)
                except Exception:
                    logger.exception("Failed to deliver %s to %s", out.event, conn_id)
