"""
Entrypoint that boots the Chorus engine behind the Discord adapter.
Discord is only the I/O surface; the engine's timers keep running between
events.
"""

import asyncio
import logging
import os
import resource

from dotenv import load_dotenv

load_dotenv()

from discord_adapter import main  # noqa: E402


def _log_mem(label: str) -> None:
    mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
    print(f"[MEMDBG] {label}: {mb:.1f} MB", flush=True)


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("CHORUS_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    print(f"[ENV] cwd={os.getcwd()} token_present={bool(os.getenv('DISCORD_TOKEN'))}", flush=True)
    _log_mem("pre-run")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Process managers send SIGINT on restart; exit without a traceback.
        print("[SHUTDOWN] Received interrupt; exiting cleanly.", flush=True)
