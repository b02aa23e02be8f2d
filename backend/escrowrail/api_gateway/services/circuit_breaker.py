"""File-backed circuit breaker guarding calls to the payment processor."""

import os
from datetime import datetime, timedelta

from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import CircuitState, utcnow


class CircuitOpenError(Exception):
    def __init__(self, processor_id: str):
        self.processor_id = processor_id
        super().__init__(f"Processor {processor_id} circuit is OPEN")


class CircuitBreaker:

    def __init__(self, processor_id: str, data_dir: str):
        self.processor_id = processor_id
        self.state_path = os.path.join(data_dir, "providers", f"{processor_id}_state.json")
        self.failure_threshold = int(os.environ.get("CB_FAILURE_THRESHOLD", 5))
        self.recovery_timeout = int(os.environ.get("CB_RECOVERY_TIMEOUT", 30))
        self.half_open_max = int(os.environ.get("CB_HALF_OPEN_MAX_CALLS", 3))

    def _default_state(self) -> dict:
        return {
            "processor_id": self.processor_id,
            "circuit_state": CircuitState.CLOSED.value,
            "failure_count": 0,
            "success_count": 0,
            "half_open_calls": 0,
        }

    def can_execute(self) -> bool:
        def _check(state: dict) -> bool:
            if not state:
                state.update(self._default_state())
            circuit = state.get("circuit_state", CircuitState.CLOSED.value)

            if circuit == CircuitState.OPEN.value:
                opened_at = state.get("opened_at")
                if opened_at and utcnow() - datetime.fromisoformat(opened_at) > timedelta(
                    seconds=self.recovery_timeout
                ):
                    state["circuit_state"] = CircuitState.HALF_OPEN.value
                    state["half_open_calls"] = 0
                    return True
                return False

            if circuit == CircuitState.HALF_OPEN.value:
                return state.get("half_open_calls", 0) < self.half_open_max

            return True

        return FileStore.update_json(self.state_path, _check)

    def record_success(self) -> None:
        def _success(state: dict) -> None:
            if not state:
                state.update(self._default_state())
            state["success_count"] = state.get("success_count", 0) + 1
            state["last_success_at"] = utcnow().isoformat()

            if state.get("circuit_state") == CircuitState.HALF_OPEN.value:
                state["half_open_calls"] = state.get("half_open_calls", 0) + 1
                if state["half_open_calls"] >= self.half_open_max:
                    state["circuit_state"] = CircuitState.CLOSED.value
                    state["failure_count"] = 0
                    state["half_open_calls"] = 0
            elif state.get("circuit_state") == CircuitState.CLOSED.value:
                # consecutive failures only
                state["failure_count"] = 0

        FileStore.update_json(self.state_path, _success)

    def record_failure(self) -> None:
        def _failure(state: dict) -> None:
            if not state:
                state.update(self._default_state())
            circuit = state.get("circuit_state", CircuitState.CLOSED.value)
            state["failure_count"] = state.get("failure_count", 0) + 1
            state["last_failure_at"] = utcnow().isoformat()

            if circuit == CircuitState.HALF_OPEN.value:
                state["circuit_state"] = CircuitState.OPEN.value
                state["opened_at"] = utcnow().isoformat()
                state["half_open_calls"] = 0
            elif circuit == CircuitState.CLOSED.value and state["failure_count"] >= self.failure_threshold:
                state["circuit_state"] = CircuitState.OPEN.value
                state["opened_at"] = utcnow().isoformat()

        FileStore.update_json(self.state_path, _failure)

    def get_state(self) -> dict:
        return FileStore.read_json(self.state_path, default=self._default_state())
