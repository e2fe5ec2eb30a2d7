from backend.app.models.entry import Entry
from backend.app.models.enums import RoundStatus
from backend.app.models.round import Round

__all__ = [
    "Entry",
    "Round",
    "RoundStatus",
]
