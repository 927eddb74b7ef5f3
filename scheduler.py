# pardini_sync/scheduler.py

import time
from typing import Callable, Optional

from config import Settings, load_settings
from logger import get_logger

log = get_logger("scheduler")


def run_forever(
    settings: Optional[Settings] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_iterations: Optional[int] = None,
) -> int:
    """One cycle every RUN_EVERY_MINUTES. Returns the number of cycles run."""
    from app import build_worker

    settings = settings or load_settings()
    interval = max(settings.run_every_minutes, 1) * 60
    worker = build_worker(settings)

    log.info(f"Pardini sync scheduler started ({settings.env}, every {settings.run_every_minutes} min).")

    iterations = 0
    try:
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                processed = worker.run_cycle()
                log.info(f"[Scheduler] Cycle {iterations} done, processed={processed}")
            except Exception as e:
                log.warning(f"[Scheduler] Cycle error (ignored): {e}")

            if max_iterations is not None and iterations >= max_iterations:
                break
            sleep(interval)
    except KeyboardInterrupt:
        log.info("[Scheduler] Interrupted; stopping.")
    finally:
        worker.shutdown()
        log.info("Pardini sync scheduler stopped.")

    return iterations


if __name__ == "__main__":
    run_forever()
