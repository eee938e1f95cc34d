# user_scripts/balance_check.py

"""Example script: pretend to query a balance for every wallet."""

from __future__ import annotations

import random

METADATA = {
    "name": "Balance check",
    "description": "Query the native balance of every wallet (demo, no network access).",
    "version": "1.0.0",
}


async def main(ctx):
    chain = ctx.params.get("chain", "eth")
    ctx.log.info("Checking %d wallets on %s", len(ctx.wallets), chain)

    async def check(wallet, item):
        # Stand-in for an RPC call; honours stop requests while "waiting".
        if await item.signal.sleep(random.uniform(0.1, 0.5)):
            item.signal.raise_if_cancelled()
        return {"address": wallet.address, "chain": chain, "balance": f"{random.uniform(0, 2):.4f}"}

    summary = await ctx.batch(check)
    return {"checked": summary.success_count, "failed": summary.error_count}
