"""Per-backend circuit breaker.

State transitions: CLOSED -> OPEN -> HALF_OPEN -> CLOSED (probe succeeded)
                                              -> OPEN   (probe failed)

Each backend name gets its own lock so unrelated backends never serialize each
other. Circuits are created lazily and live as long as the breaker instance.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import CircuitBreakerConfig, CircuitSnapshot, CircuitState

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]
Transition = Tuple[str, CircuitState, CircuitState]


class _Circuit:
    """Mutable state for one backend, guarded by its own lock."""

    __slots__ = (
        "name",
        "lock",
        "state",
        "failure_count",
        "last_failure_at",
        "half_open_probes_used",
        "total_failures",
        "total_successes",
    )

    def __init__(self, name: str):
        self.name = name
        self.lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        self.half_open_probes_used = 0
        self.total_failures = 0
        self.total_successes = 0


class CircuitBreaker:
    """Tracks consecutive failures per backend and gates new attempts."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        """
        Initialize the breaker.

        Args:
            config: Thresholds shared by every backend
            clock: Monotonic clock in seconds; injectable for tests
            on_state_change: Called as (name, old, new) after each transition
        """
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.on_state_change = on_state_change
        self._circuits: Dict[str, _Circuit] = {}
        self._registry_lock = threading.Lock()

    @property
    def reset_timeout_seconds(self) -> float:
        return self.config.reset_timeout_ms / 1000.0

    def _circuit(self, name: str) -> _Circuit:
        circuit = self._circuits.get(name)
        if circuit is None:
            with self._registry_lock:
                circuit = self._circuits.setdefault(name, _Circuit(name))
        return circuit

    def _transition(self, circuit: _Circuit, new_state: CircuitState, transitions: List[Transition]) -> None:
        old_state = circuit.state
        if old_state == new_state:
            return
        circuit.state = new_state
        if new_state == CircuitState.HALF_OPEN:
            circuit.half_open_probes_used = 0
        transitions.append((circuit.name, old_state, new_state))

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit '{circuit.name}' OPEN after {circuit.failure_count} failures, "
                f"will probe again in {self.reset_timeout_seconds:.0f}s"
            )
        else:
            logger.info(f"Circuit '{circuit.name}' {old_state.value} -> {new_state.value}")

    def _notify(self, transitions: List[Transition]) -> None:
        # Callbacks run outside the circuit lock so they may query the breaker
        if self.on_state_change is None:
            return
        for name, old_state, new_state in transitions:
            self.on_state_change(name, old_state, new_state)

    def _maybe_half_open(self, circuit: _Circuit, transitions: List[Transition]) -> None:
        if circuit.state != CircuitState.OPEN or circuit.last_failure_at is None:
            return
        if self.clock() - circuit.last_failure_at >= self.reset_timeout_seconds:
            self._transition(circuit, CircuitState.HALF_OPEN, transitions)

    def is_open(self, name: str) -> bool:
        """
        Check whether attempts against a backend are blocked.

        Does not consume a half-open probe, but performs the lazy OPEN -> HALF_OPEN
        transition once the reset timeout has elapsed.
        """
        transitions: List[Transition] = []
        circuit = self._circuit(name)
        with circuit.lock:
            self._maybe_half_open(circuit, transitions)
            if circuit.state == CircuitState.OPEN:
                blocked = True
            elif circuit.state == CircuitState.HALF_OPEN:
                blocked = circuit.half_open_probes_used >= self.config.half_open_max_probes
            else:
                blocked = False
        self._notify(transitions)
        return blocked

    def allow_request(self, name: str) -> bool:
        """Like ``not is_open(name)`` but claims a probe slot while half-open."""
        transitions: List[Transition] = []
        circuit = self._circuit(name)
        with circuit.lock:
            self._maybe_half_open(circuit, transitions)
            if circuit.state == CircuitState.CLOSED:
                allowed = True
            elif circuit.state == CircuitState.HALF_OPEN:
                allowed = circuit.half_open_probes_used < self.config.half_open_max_probes
                if allowed:
                    circuit.half_open_probes_used += 1
            else:
                allowed = False
        self._notify(transitions)
        return allowed

    def release_probe(self, name: str) -> None:
        """Give back a probe slot claimed by allow_request() whose attempt never finished."""
        circuit = self._circuit(name)
        with circuit.lock:
            if circuit.state == CircuitState.HALF_OPEN and circuit.half_open_probes_used > 0:
                circuit.half_open_probes_used -= 1
                logger.info(f"Circuit '{name}' probe released without an outcome")

    def record_success(self, name: str) -> None:
        transitions: List[Transition] = []
        circuit = self._circuit(name)
        with circuit.lock:
            circuit.total_successes += 1
            if circuit.failure_count:
                logger.info(f"Circuit '{name}' success, resetting failure count")
            circuit.failure_count = 0
            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(circuit, CircuitState.CLOSED, transitions)
        self._notify(transitions)

    def record_failure(self, name: str) -> None:
        transitions: List[Transition] = []
        circuit = self._circuit(name)
        with circuit.lock:
            circuit.total_failures += 1
            circuit.failure_count += 1
            circuit.last_failure_at = self.clock()
            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(circuit, CircuitState.OPEN, transitions)
            elif (
                circuit.state == CircuitState.CLOSED
                and circuit.failure_count >= self.config.failure_threshold
            ):
                self._transition(circuit, CircuitState.OPEN, transitions)
        self._notify(transitions)

    def snapshot(self, name: str) -> CircuitSnapshot:
        """Get the stored state of one circuit without triggering transitions."""
        circuit = self._circuit(name)
        with circuit.lock:
            return CircuitSnapshot(
                name=name,
                state=circuit.state,
                failure_count=circuit.failure_count,
                last_failure_at=circuit.last_failure_at,
                half_open_probes_used=circuit.half_open_probes_used,
                total_failures=circuit.total_failures,
                total_successes=circuit.total_successes,
            )

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        with self._registry_lock:
            names = list(self._circuits)
        return {name: self.snapshot(name) for name in names}

    def reset(self, name: str) -> None:
        """Return one circuit to its initial closed state."""
        transitions: List[Transition] = []
        circuit = self._circuit(name)
        with circuit.lock:
            self._transition(circuit, CircuitState.CLOSED, transitions)
            circuit.failure_count = 0
            circuit.last_failure_at = None
            circuit.half_open_probes_used = 0
        self._notify(transitions)

    def reset_all(self) -> None:
        with self._registry_lock:
            names = list(self._circuits)
        for name in names:
            self.reset(name)
