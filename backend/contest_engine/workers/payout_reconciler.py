"""Payout reconciliation: starts missed payouts and retries pending transfers."""

import logging

from contest_engine.services.payout_service import reconcile_payouts, recover_unsettled_contests
from contest_engine.workers._state import set_synced

logger = logging.getLogger("contest_engine.payout_reconciler")


async def run_payout_reconciliation() -> dict[str, int]:
    recovered = await recover_unsettled_contests()
    result = {"recovered": recovered, **await reconcile_payouts()}
    if recovered or result["attempted"]:
        logger.info("Payout reconciliation complete: %s", result)
    else:
        logger.debug("Payout reconciliation: nothing pending")
    await set_synced("payout_reconciler", metrics=result)
    return result
