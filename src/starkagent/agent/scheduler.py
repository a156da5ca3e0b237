import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ..models import BackgroundAction
from ..services.credential_store import session_key
from ..services.redis import KeyValueStore

logger = logging.getLogger(__name__)

BACKGROUND_ACTION_FIELD = "backgroundAction"

RunTurn = Callable[[str, str], Awaitable[str]]
Deliver = Callable[[str, str], Awaitable[None]]


class BackgroundActionScheduler:
    """At most one repeating background action per session.

    Each firing runs a dialogue turn with the action's description as the
    user message and pushes the reply to the session's chat. Active actions
    are persisted so ``restore`` can restart them after a restart.
    """

    def __init__(
        self,
        run_turn: RunTurn,
        deliver: Deliver,
        store: Optional[KeyValueStore] = None,
    ) -> None:
        self._run_turn = run_turn
        self._deliver = deliver
        self._store = store
        self._actions: Dict[str, BackgroundAction] = {}

    def active(self, session_id: str) -> Optional[BackgroundAction]:
        return self._actions.get(session_id)

    def active_sessions(self) -> List[str]:
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    async def start(self, session_id: str, description: str, interval_seconds: float) -> str:
        """Replace the session's action (if any) with a new one."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._cancel(session_id)

        action = BackgroundAction(
            session_id=session_id,
            description=description,
            interval_seconds=interval_seconds,
        )
        action.task = asyncio.create_task(self._run(action), name=f"background:{session_id}")
        self._actions[session_id] = action
        logger.info(
            "Started background action for session %s every %ss: %s",
            session_id, interval_seconds, description[:100],
        )
        await self._persist(action)
        return "Started."

    async def stop(self, session_id: str) -> str:
        """Cancel the session's action. No-op when there is none."""
        if self._cancel(session_id):
            logger.info("Stopped background action for session %s", session_id)
        await self._forget(session_id)
        return "Stopped."

    async def restore(self) -> int:
        """Restart persisted actions. Returns how many were started."""
        if self._store is None:
            return 0
        restored = 0
        for key in await self._store.scan_keys(f"*:{BACKGROUND_ACTION_FIELD}"):
            raw = await self._store.get(key)
            if raw is None:
                continue
            try:
                action = BackgroundAction.from_dict(json.loads(raw))
                await self.start(action.session_id, action.description, action.interval_seconds)
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Invalid background action at %s: %s", key, e)
                continue
            restored += 1
        if restored:
            logger.info("Restored %d background actions", restored)
        return restored

    async def shutdown(self) -> None:
        """Cancel every timer. Persisted entries are kept for ``restore``."""
        tasks = [a.task for a in self._actions.values() if a.task is not None]
        self._actions.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background scheduler drained (%d actions)", len(tasks))

    def _cancel(self, session_id: str) -> bool:
        action = self._actions.pop(session_id, None)
        if action is None or action.task is None:
            return action is not None
        # Called from inside the action's own turn: let the turn finish,
        # the loop sees it is no longer registered and exits.
        if action.task is not asyncio.current_task():
            action.task.cancel()
        return True

    async def _run(self, action: BackgroundAction) -> None:
        while self._actions.get(action.session_id) is action:
            await asyncio.sleep(action.interval_seconds)
            if self._actions.get(action.session_id) is not action:
                return
            logger.info("Background action firing for session %s", action.session_id)
            try:
                text = await self._run_turn(action.session_id, action.description)
                await self._deliver(action.session_id, text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Background action for session %s failed: %s", action.session_id, e
                )

    async def _persist(self, action: BackgroundAction) -> None:
        if self._store is None:
            return
        await self._store.set(
            session_key(action.session_id, BACKGROUND_ACTION_FIELD),
            json.dumps(action.to_dict()),
        )

    async def _forget(self, session_id: str) -> None:
        if self._store is None:
            return
        await self._store.delete(session_key(session_id, BACKGROUND_ACTION_FIELD))
