from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from coinclash.config import settings
from coinclash.core.logger import get_logger
from coinclash.core.matchmaking import Matchmaker, matchmaker
from coinclash.core.multiplayer import MultiplayerRounds, multiplayer_rounds
from coinclash.core.settlement import SettlementEngine, settlement_engine
from coinclash.core.websocket import ConnectionManager, ws_manager

logger = get_logger("scheduler")


class GameScheduler:
    """Server-driven timers: pool rounds, the settlement sweep and queue expiry."""

    def __init__(
        self,
        rounds: MultiplayerRounds = multiplayer_rounds,
        settlement: SettlementEngine = settlement_engine,
        queue: Matchmaker = matchmaker,
        manager: ConnectionManager = ws_manager,
    ):
        self.scheduler = AsyncIOScheduler()
        self.rounds = rounds
        self.settlement = settlement
        self.queue = queue
        self.manager = manager

    def start(self):
        config = settings.scheduler

        # 1. Close expired rounds and open the next one
        self.scheduler.add_job(
            self.round_tick,
            IntervalTrigger(seconds=config.round_tick_seconds),
            id="round_tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        # 2. Settle players who never called settle themselves
        self.scheduler.add_job(
            self.settle_sessions,
            IntervalTrigger(seconds=config.settle_sessions_seconds),
            id="settle_sessions",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        # 3. Optional hard expiry of waiting queue entries
        if settings.matchmaking.hard_expiry_seconds > 0:
            self.scheduler.add_job(
                self.expire_queue,
                IntervalTrigger(seconds=config.expire_queue_seconds),
                id="expire_queue",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        self.scheduler.start()
        logger.info("Game scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Game scheduler shutdown")

    async def round_tick(self):
        try:
            for round_ in self.rounds.complete_expired_rounds():
                await self.manager.publish_row_change("multiplayer_rounds", round_["id"], round_["status"])

            round_, opened = self.rounds.open_round_if_due()
            if opened:
                await self.manager.publish_row_change("multiplayer_rounds", round_["id"], round_["status"])
        except Exception as e:
            logger.error(f"Error in round_tick: {e}", exc_info=True)

    async def settle_sessions(self):
        try:
            self.settlement.settle_pending_sessions()
        except Exception as e:
            logger.error(f"Error in settle_sessions: {e}", exc_info=True)

    async def expire_queue(self):
        try:
            for entry_id in self.queue.expire_stale_entries():
                await self.manager.publish_row_change("matchmaking_queue", entry_id, "expired")
        except Exception as e:
            logger.error(f"Error in expire_queue: {e}", exc_info=True)


# Global instance
game_scheduler = GameScheduler()
