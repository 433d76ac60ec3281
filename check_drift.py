"""Print balances, balance ratio and drifts for each configured account (read-only)."""
import asyncio
import os

from dotenv import load_dotenv

from src.config.accounts import load_accounts
from src.config.config import Settings
from src.core.models import Balance, parse_positions
from src.infra.async_info import AsyncInfo
from src.strategy.drift_detector import detect

load_dotenv()


async def report() -> None:
    cfg = Settings.load()
    accounts = load_accounts(os.getenv('HL_ACCOUNTS_CONFIG', cfg.accounts_config))
    info = AsyncInfo(cfg.base_url, timeout=cfg.http_timeout)
    try:
        for acc in accounts:
            tracked_state, user_state = await asyncio.gather(
                info.user_state(acc.tracked_wallet),
                info.user_state(acc.trading_address),
            )
            tracked_bal = Balance.from_user_state(tracked_state).account_value
            user_bal = Balance.from_user_state(user_state).account_value
            tracked = parse_positions(tracked_state)
            user = parse_positions(user_state)
            ratio = user_bal / tracked_bal if tracked_bal > 0 else 0.0

            print(f"\n=== {acc.display_name} ===")
            print(f"Tracked {acc.tracked_wallet}: ${tracked_bal:,.2f} ({len(tracked)} positions)")
            print(f"User    {acc.trading_address}: ${user_bal:,.2f} ({len(user)} positions)")
            print(f"Balance ratio: {ratio:.4f}")

            drifts = detect(tracked, user, tracked_bal, user_bal, acc.effective_drift_threshold(cfg.drift_threshold_pct))
            if not drifts.has_drift:
                print("In sync")
                continue
            print("Drifts:")
            for d in drifts.drifts:
                flag = "favorable" if d.is_favorable else "wait"
                current = d.user_position.size if d.user_position else 0.0
                print(f"  {d.coin}: {d.drift_type.value} diff={d.size_diff_percent:.2f}% "
                      f"target={d.scaled_target_size:.6g} current={current:.6g} [{flag}]")
    finally:
        await info.close()


if __name__ == '__main__':
    asyncio.run(report())
