from datetime import datetime

from pydantic import BaseModel

from backend.app.models.entry import Entry
from backend.app.models.round import Round


class DrawRequest(BaseModel):
    secret: str = ""
    round: int | None = None


def entry_summary(entry: Entry) -> dict:
    return {
        "code": entry.code,
        "amount_sats": entry.amount_sats,
        "created_at": _isoformat(entry.created_at),
    }


def entry_detail(entry: Entry) -> dict:
    return {
        "code": entry.code,
        "wallet_address": entry.wallet_address,
        "amount_sats": entry.amount_sats,
        "btc_price_usd": float(entry.btc_price_usd),
        "created_at": _isoformat(entry.created_at),
    }


def round_record(round_: Round) -> dict:
    return {
        "round_number": round_.round_number,
        "status": round_.status.value,
        "winner_code": round_.winner_code,
        "winner_address": round_.winner_address,
        "prize_amount_sats": round_.prize_amount_sats,
        "total_entries": round_.total_entries,
        "drawn_at": _isoformat(round_.drawn_at),
        "created_at": _isoformat(round_.created_at),
    }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
