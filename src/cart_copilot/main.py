"""
Cart Copilot facade

Library entry point: start a session, wait for its Review Pack, then approve
or reject it. Checkout is always left to the human at the returned cart URL.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from cart_copilot.control_panel.session_manager import (
    Session,
    SessionListener,
    SessionManager,
    SessionStatus,
    StartSessionRequest,
)
from cart_copilot.core.config import CoordinatorConfig, CopilotConfig
from cart_copilot.core.models import ApprovalRequest, ApprovalResult, UserModification
from cart_copilot.db.history_store import HistoryStore, SQLiteHistoryStore
from cart_copilot.tools.browser import PageFactory
from cart_copilot.utils.logger_config import setup_logger

logger = logging.getLogger(__name__)


class CartCopilot:
    """Thin convenience layer over SessionManager"""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        store: Optional[HistoryStore] = None,
        page_factory: Optional[PageFactory] = None,
        listener: Optional[SessionListener] = None,
    ):
        self.manager = SessionManager(config=config, store=store, page_factory=page_factory, listener=listener)

    @classmethod
    async def from_env(cls, listener: Optional[SessionListener] = None) -> "CartCopilot":
        store = SQLiteHistoryStore(CopilotConfig.get_history_db_path())
        await store.initialize()
        return cls(config=CoordinatorConfig.from_env(), store=store, listener=listener)

    async def start(self, username: str, password: str, household_id: str = "default") -> Session:
        return await self.manager.start_session(
            StartSessionRequest(username=username, password=password, household_id=household_id)
        )

    async def prepare_review(self, username: str, password: str, household_id: str = "default") -> Session:
        """Run a session up to awaiting_review (or a terminal status) and return it"""
        session = await self.start(username, password, household_id)
        await self.manager.wait_for_pipeline(session.session_id)
        return self.manager.get_session_status(session.session_id)

    def status(self, session_id: str) -> Optional[Session]:
        return self.manager.get_session_status(session_id)

    async def approve(
        self,
        session_id: str,
        modifications: Optional[List[UserModification]] = None,
    ) -> ApprovalResult:
        return await self.manager.submit_approval(
            session_id, ApprovalRequest(approved=True, modifications=modifications or [])
        )

    async def reject(self, session_id: str, reason: Optional[str] = None) -> ApprovalResult:
        return await self.manager.submit_approval(session_id, ApprovalRequest(approved=False, reason=reason))

    async def cancel(self, session_id: str) -> bool:
        return await self.manager.cancel_session(session_id)

    async def close(self):
        await self.manager.shutdown()


async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild a grocery cart and print the Review Pack")
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--household", default="default")
    parser.add_argument("--approve", action="store_true", help="Approve the pack unchanged after printing it")
    args = parser.parse_args(argv)

    setup_logger()
    copilot = await CartCopilot.from_env()
    try:
        session = await copilot.prepare_review(args.username, args.password, args.household)
        if session.status != SessionStatus.AWAITING_REVIEW:
            logger.error(f"MAIN: Session ended as {session.status.value}: {session.error}")
            return 1

        print(json.dumps(session.review_pack.model_dump(mode="json"), indent=2, ensure_ascii=False))
        if args.approve:
            result = await copilot.approve(session.session_id)
            print(f"Cart ready at {result.cart_url}. Complete checkout in your browser.")
        else:
            await copilot.reject(session.session_id, "Printed only")
        return 0
    finally:
        await copilot.close()


def run():
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
