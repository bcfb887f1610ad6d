"""
State Machine Module for Order Payment Status
"""
from app.state_machine.payment_states import (
    TransitionSource,
    TransitionRejectReason,
    is_valid_transition,
    transitions_for,
)

__all__ = ["TransitionSource", "TransitionRejectReason", "is_valid_transition", "transitions_for"]
