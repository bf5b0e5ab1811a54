from .state_machine import BookingStateMachine

__all__ = ["BookingStateMachine"]
