#!/usr/bin/env python3
"""
Result-reporting tools

The surface agents use to talk back to the run: a key/value namespace plus
hypothesis status and result reporting. Every argument is untrusted input
and is validated here before it reaches the state store.

``ResultTools.call`` never raises for bad input; it answers
``{"ok": False, "error": ...}`` so the agent can correct itself. State and
timeline persistence failures are not the agent's fault and propagate.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import DilagentError, StateDecodeError, StatePersistenceError, ValidationError
from .models import (
    HypothesisStatusUpdate,
    result_from_dict,
    store_value_from_dict,
)
from .state_store import RunStateStore
from .timeline import Timeline

logger = logging.getLogger(__name__)


# name -> (description, required arguments)
TOOL_SPECS = {
    "state_get": ("Get a value from the shared store", ["key"]),
    "state_set": ("Set a value (a hypothesis result or status update) in the shared store",
                  ["key", "value"]),
    "state_delete": ("Delete a key from the shared store", ["key"]),
    "state_list": ("List all key/value entries", []),
    "state_keys": ("List all keys", []),
    "state_clear": ("Remove every key from the shared store", []),
    "hypothesis_update_status": ("Report intermediate progress for a hypothesis",
                                 ["hypothesisId", "statusUpdate"]),
    "hypothesis_set_result": ("Report the final Proven/Disproven/Inconclusive result",
                              ["hypothesisId", "result"]),
    "hypothesis_get_status_all": ("Status and result of every hypothesis", []),
    "hypothesis_clear_all": ("Reset every hypothesis to pending", []),
}


def _require_str(arguments: Dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError("invalid arguments", [f"'{key}' must be a non-empty string"])
    return value


class ResultTools:
    """Validated tool handlers bound to one run"""

    def __init__(self, store: RunStateStore, timeline: Timeline):
        self.store = store
        self.timeline = timeline
        self._handlers: Dict[str, Callable] = {
            name: getattr(self, name) for name in TOOL_SPECS
        }

    @property
    def tool_names(self) -> List[str]:
        return list(TOOL_SPECS)

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Dispatch one tool call.

        Args:
            name: Tool name (see TOOL_SPECS)
            arguments: JSON object of arguments

        Returns:
            {"ok": True, "result": ...} or {"ok": False, "error": "..."}

        Raises:
            StatePersistenceError: If the store or timeline could not be written
        """
        handler = self._handlers.get(name)
        if handler is None:
            return {"ok": False, "error": f"Unknown tool '{name}'. Available: {self.tool_names}"}

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return {"ok": False, "error": "arguments must be a JSON object"}

        missing = [key for key in TOOL_SPECS[name][1] if key not in arguments]
        if missing:
            return {"ok": False, "error": f"{name}: missing required arguments {missing}"}

        try:
            result = await handler(arguments)
        except (StatePersistenceError, StateDecodeError):
            raise
        except DilagentError as e:
            logger.warning(f"Tool {name} rejected: {e}")
            return {"ok": False, "error": str(e)}

        logger.debug(f"Tool {name} ok")
        return {"ok": True, "result": result}

    # ------------------------------------------------------------------
    # Key/value namespace
    # ------------------------------------------------------------------

    async def state_get(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        value = self.store.kv_get(_require_str(arguments, "key"))
        return {"value": value.to_dict() if value is not None else None}

    async def state_set(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        key = _require_str(arguments, "key")
        value = store_value_from_dict(arguments["value"])
        await self.store.kv_set(key, value)
        return {"key": key}

    async def state_delete(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {"deleted": await self.store.kv_delete(_require_str(arguments, "key"))}

    async def state_list(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "entries": [{"key": key, "value": value.to_dict()}
                        for key, value in self.store.kv_list()]
        }

    async def state_keys(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {"keys": self.store.kv_keys()}

    async def state_clear(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        await self.store.kv_clear()
        return {"cleared": True}

    # ------------------------------------------------------------------
    # Hypotheses
    # ------------------------------------------------------------------

    async def hypothesis_update_status(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        hypothesis_id = _require_str(arguments, "hypothesisId")
        update = HypothesisStatusUpdate.from_dict(arguments["statusUpdate"])
        if update.hypothesis_id != hypothesis_id:
            raise ValidationError("hypothesisId mismatch", [
                f"statusUpdate.hypothesisId is {update.hypothesis_id!r}, expected {hypothesis_id!r}"
            ])

        record, claimed = await self.store.set_status_update(hypothesis_id, update)

        if claimed:
            await self.timeline.record_hypothesis(
                "hypothesis.started", self.store.get_state().current_phase, hypothesis_id,
                f"{hypothesis_id} started ({update.phase.value})",
            )
        logger.info(f"{hypothesis_id} [{update.phase.value}] {update.experiment_id}: {update.status}")
        return {"hypothesisId": hypothesis_id, "status": record.status.value}

    async def hypothesis_set_result(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        hypothesis_id = _require_str(arguments, "hypothesisId")
        result = result_from_dict(arguments["result"])
        if result.hypothesis_id != hypothesis_id:
            raise ValidationError("hypothesisId mismatch", [
                f"result.hypothesisId is {result.hypothesis_id!r}, expected {hypothesis_id!r}"
            ])

        record = await self.store.complete_hypothesis(hypothesis_id, result)
        await self.timeline.record_hypothesis(
            "hypothesis.completed", self.store.get_state().current_phase, hypothesis_id,
            f"{hypothesis_id} completed: {result.TAG}",
            {"result": result.TAG, "durationMs": record.duration_ms},
        )
        logger.info(f"{hypothesis_id} reported result: {result.TAG}")
        return {"hypothesisId": hypothesis_id, "status": record.status.value}

    async def hypothesis_get_status_all(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return {
            record.id: {
                "status": record.status.value,
                "result": record.result.to_dict() if record.result else None,
                "currentStatusUpdate": (
                    record.current_status_update.to_dict()
                    if record.current_status_update else None
                ),
            }
            for record in self.store.list_hypotheses()
        }

    async def hypothesis_clear_all(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        state = await self.store.clear_hypotheses()
        return {"cleared": len(state.hypotheses)}
