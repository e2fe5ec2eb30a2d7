#!/usr/bin/env python
import argparse
import asyncio
import json

from backend.app.core.config import settings
from backend.app.core.logging import setup_logging
from backend.app.db.session import SessionLocal
from backend.app.services.errors import ServiceError
from backend.app.services.round_service import draw_winner, get_current_round


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Draw the winner of the active raffle round")
    parser.add_argument(
        "--round",
        type=int,
        default=None,
        help="Only draw if this round is still the active one",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the active round without drawing",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    setup_logging(settings.log_level)
    async with SessionLocal() as session:
        if args.dry_run:
            print(f"Active round: {await get_current_round(session)}")
            return
        try:
            result = await draw_winner(
                session,
                prize_share_bps=settings.prize_share_bps,
                expected_round=args.round,
            )
        except ServiceError as exc:
            raise SystemExit(f"Draw failed ({exc.kind}): {exc}") from exc
        await session.commit()
    print(
        json.dumps(
            {
                "round": result.round_number,
                "winner": {"code": result.winner_code, "address": result.winner_address},
                "totalEntries": result.total_entries,
                "totalCollectedSats": result.total_sats,
                "prizeSats": result.prize_sats,
                "profitSats": result.profit_sats,
                "nextRound": result.next_round,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    asyncio.run(main())
