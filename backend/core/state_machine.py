"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for managing entity status transitions with:
- Transition registration with handlers
- Transition validation (unregistered transitions are rejected)
- Handler execution inside an existing session/transaction
- History entries for the entity's state_history array

Usage:
    machine = StateMachine("milestone")
    machine.register("evidence_submitted", "approved", approve_handler)
    machine.register(["approved", "rejected"], "pending", reopen_handler)

    result = await machine.transition(milestone_doc, "approved", session=session, context={...})
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Set, Tuple, Union, Iterable
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(Exception):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    """Raised when attempting an invalid state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        self.message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(self.message)


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Handler signature: async def handler(entity_doc, context, session) -> Dict[str, Any]
TransitionHandler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Dict[str, Any]]]


class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        handler: TransitionHandler,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.handler = handler
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Generic state machine for entity status transitions.

    Terminal states are simply states with no outgoing transition except the
    ones registered explicitly (e.g. a dedicated reopen).
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_states: Union[str, Iterable[str]],
        to_state: str,
        handler: TransitionHandler,
        description: str = ""
    ) -> "StateMachine":
        """
        Register a transition from one or more source states.

        Returns:
            self (for chaining)
        """
        if isinstance(from_states, str):
            from_states = [from_states]

        for from_state in from_states:
            key = (from_state, to_state)
            if key in self._transitions:
                logger.warning(
                    f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                    f"'{from_state}' -> '{to_state}'"
                )
            self._transitions[key] = Transition(from_state, to_state, handler, description)
            self._states.add(from_state)
            self._states.add(to_state)

        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """Raises InvalidTransitionError if the transition is not registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    async def transition(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a state transition.

        The handler persists the change (it owns the compare-and-set on the
        entity) and returns whatever it wants reported back.

        Raises:
            StateMachineError: entity has no status
            InvalidTransitionError: transition not registered
            Any exception raised by the handler is propagated unchanged.
        """
        if context is None:
            context = {}

        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise StateMachineError(f"Entity missing status field: {self.status_field}")

        try:
            self.validate_transition(from_state, to_state)
        except InvalidTransitionError as e:
            logger.warning(f"[STATE_MACHINE] {e.message}")
            raise

        transition = self._transitions[(from_state, to_state)]

        logger.info(
            f"[STATE_MACHINE] Executing {self.entity_name} {entity_doc.get('_id')}: "
            f"'{from_state}' -> '{to_state}'"
        )

        handler_result = await transition.handler(entity_doc, context, session)

        return {
            "status": "success",
            "from_state": from_state,
            "to_state": to_state,
            "handler_result": handler_result or {},
            "transitioned_at": datetime.utcnow()
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """History entry to append to the entity's state_history array."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_graph(self) -> Dict[str, List[str]]:
        """Get state graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions.keys():
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
