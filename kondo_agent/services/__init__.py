from kondo_agent.services.result import Result
from kondo_agent.services.state_machine import (
    InvalidTransitionError,
    JobStatus,
    can_transition,
    is_terminal,
    transition,
)
