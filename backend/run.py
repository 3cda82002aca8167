"""
Backend startup script
Sets the Windows event loop policy Playwright needs before uvicorn starts
"""
import asyncio
import sys

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import uvicorn

from cart_copilot.core.config import CopilotConfig


def main():
    uvicorn.run(
        "backend.main:app",
        host=CopilotConfig.get_api_host(),
        port=CopilotConfig.get_api_port(),
        log_level="info",
    )


if __name__ == "__main__":
    main()
