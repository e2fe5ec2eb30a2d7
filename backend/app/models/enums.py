from enum import Enum


class RoundStatus(str, Enum):
    active = "active"
    completed = "completed"
