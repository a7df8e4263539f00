import asyncio
import sys
from pathlib import Path

# -------------------------------------------------------------------------
# Running this file as a script puts `scripts/` on sys.path, not the repo
# root, so `import services...` would fail without this.
# -------------------------------------------------------------------------
repo_root = Path(__file__).resolve().parents[1]   # `scripts/..` → repo root
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from core.config import get_settings
from core.exceptions import ScraperException
from core.logging import setup_logging
from services.browser.session import BrowserSessionManager
from services.scraper.config_loader import load_targets


async def main(target_id: str = None) -> int:
    """
    One manual poll against the live site: launch, navigate, click, parse.
    Handy when the stop page markup changes.
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, process="check")

    targets = load_targets()
    target = next((t for t in targets if t.id == target_id), targets[0]) if targets else None
    if target is None:
        print("No targets configured")
        return 1

    sessions = BrowserSessionManager(settings)
    handle = await sessions.open(target.id)
    try:
        await sessions.navigate(handle, target.locator, settings.NAVIGATION_TIMEOUT)
        await sessions.interact(handle, settings.INTERACTION_TIMEOUT)
        rows = await sessions.extract(
            handle, settings.EXTRACTION_TIMEOUT, settle_delay=settings.SETTLE_DELAY
        )
    except ScraperException as exc:
        print(f"❌ {exc.code}: {exc.message}")
        return 1
    finally:
        await sessions.close(handle)

    print(f"✅ {target.id} (line {target.line} @ stop {target.stop}): {len(rows)} row(s)")
    for row in rows:
        print(f"   {row.line:>6}  {row.time:<12} {row.line_name}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))
