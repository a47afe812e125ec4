import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from shadowbox.core.exceptions import InvalidStartupTransitionError


class StartupState(str, Enum):
    """
    Steps the server walks through before it accepts management requests.

    Normal Workflow: Validating -> ExportingMetrics -> SupervisingScraper ->
    LoadingConfig -> ConstructingDependentService -> Serving
    Alternative: -> Failed (from any non-terminal step)
    """

    VALIDATING = "Validating"
    EXPORTING_METRICS = "ExportingMetrics"
    SUPERVISING_SCRAPER = "SupervisingScraper"
    LOADING_CONFIG = "LoadingConfig"
    CONSTRUCTING_DEPENDENT_SERVICE = "ConstructingDependentService"
    SERVING = "Serving"
    FAILED = "Failed"


class StartupStateMachine:
    """
    Single owner of the startup state.

    Every step of the orchestrator moves through here, so an out-of-order
    step raises instead of silently exposing a half-built server.
    """

    def __init__(self):
        self._state = StartupState.VALIDATING
        self._history: List[StartupState] = [StartupState.VALIDATING]
        self._failure: Optional[BaseException] = None

        self._transitions: Dict[StartupState, Set[StartupState]] = {
            StartupState.VALIDATING: {
                StartupState.EXPORTING_METRICS,
                StartupState.FAILED,
            },
            StartupState.EXPORTING_METRICS: {
                StartupState.SUPERVISING_SCRAPER,
                StartupState.FAILED,
            },
            StartupState.SUPERVISING_SCRAPER: {
                StartupState.LOADING_CONFIG,
                StartupState.FAILED,
            },
            StartupState.LOADING_CONFIG: {
                StartupState.CONSTRUCTING_DEPENDENT_SERVICE,
                StartupState.FAILED,
            },
            StartupState.CONSTRUCTING_DEPENDENT_SERVICE: {
                StartupState.SERVING,
                StartupState.FAILED,
            },
            # Serving and Failed are terminal
            StartupState.SERVING: set(),
            StartupState.FAILED: set(),
        }

    @property
    def state(self) -> StartupState:
        return self._state

    @property
    def history(self) -> List[StartupState]:
        return list(self._history)

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    @property
    def is_terminal(self) -> bool:
        return not self._transitions[self._state]

    def transition(self, new_state: StartupState) -> None:
        if new_state == StartupState.FAILED:
            raise InvalidStartupTransitionError(self._state.value, new_state.value)
        self._move(new_state)

    def fail(self, error: BaseException) -> None:
        """Record a fatal error and move to Failed."""
        self._move(StartupState.FAILED)
        self._failure = error

    def _move(self, new_state: StartupState) -> None:
        if new_state not in self._transitions[self._state]:
            raise InvalidStartupTransitionError(self._state.value, new_state.value)
        logging.debug("Startup: %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        self._history.append(new_state)
