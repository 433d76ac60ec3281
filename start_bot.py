#!/usr/bin/env python3
"""
Safe Copy Sync Startup Script

This script helps you safely start the service by:
1. Checking that .env file exists
2. Validating the accounts file
3. Running pre-flight checks
4. Starting the service with proper error handling
"""

import os
import sys
from pathlib import Path


def check_env_file():
    """Verify .env file exists and has the signing key."""
    env_file = Path('.env')

    if not env_file.exists():
        print("❌ ERROR: .env file not found")
        print("\nCreate .env file with at least:")
        print("  HL_PRIVATE_KEY=0x...  (key allowed to trade the configured vaults)")
        return False

    with open(env_file) as f:
        content = f.read()
        if 'HL_PRIVATE_KEY' not in content:
            print("❌ ERROR: Missing HL_PRIVATE_KEY in .env")
            return False

    print("✅ .env file present and valid")
    return True


def check_config():
    """Validate the accounts file."""
    from src.config.accounts import load_accounts

    path = os.getenv('HL_ACCOUNTS_CONFIG', 'configs/accounts.yaml')
    try:
        accounts = load_accounts(path)
    except (FileNotFoundError, ValueError) as exc:
        print(f"❌ ERROR: {exc}")
        return False

    if not accounts:
        print(f"❌ ERROR: No enabled accounts in {path}")
        return False

    for acc in accounts:
        target = acc.vault_address or acc.user_wallet
        print(f"   {acc.display_name}: copying {acc.tracked_wallet} -> {target}")
    print("✅ Accounts file present and valid")
    return True


def check_state_directory():
    """Ensure state directory exists."""
    state_dir = Path(os.getenv('HL_STATE_DIR', 'state'))
    if not state_dir.exists():
        state_dir.mkdir(parents=True)

    print("✅ State directory ready")
    return True


def check_log_directory():
    """Ensure the log file's directory exists."""
    log_file = os.getenv('HL_LOG_FILE', 'copybot.log')
    if not log_file:
        print("✅ File logging disabled")
        return True
    log_dir = Path(log_file).parent
    if not log_dir.exists():
        log_dir.mkdir(parents=True)

    print("✅ Log directory ready")
    return True


def get_environment_mode():
    """Determine if running on mainnet or testnet."""
    testnet = os.getenv('HL_TESTNET', '').lower() in {'1', 'true', 'yes', 'y'}
    base_url = os.getenv('HL_BASE_URL') or (
        'https://api.hyperliquid-testnet.xyz' if testnet else 'https://api.hyperliquid.xyz'
    )
    testnet = testnet or 'testnet' in base_url.lower()
    mode = 'TESTNET' if testnet else 'MAINNET'
    color = '🟡' if testnet else '🔴'

    print(f"\n{color} Running on: {mode}")
    print(f"   API: {base_url}")

    if testnet:
        print("   ✅ Testnet (safe for learning)")
    else:
        print("   ⚠️  MAINNET (real money!)")
        print("   ⚠️  Make sure you've tested on testnet first!")

    return testnet


def confirm_startup(auto_confirm: bool = False):
    """Get user confirmation before starting."""
    from dotenv import load_dotenv
    load_dotenv()

    print("\n" + "="*60)
    print("PRE-FLIGHT CHECKS")
    print("="*60)

    checks = [
        ("Environment file", check_env_file),
        ("Accounts file", check_config),
        ("State directory", check_state_directory),
        ("Log directory", check_log_directory),
    ]

    all_passed = True
    for name, check_func in checks:
        if not check_func():
            all_passed = False

    if not all_passed:
        print("\n❌ Pre-flight checks FAILED")
        print("Fix errors above and try again")
        return False

    print("\n✅ All pre-flight checks passed!")

    testnet = get_environment_mode()

    # Skip confirmation if auto_confirm (for systemd)
    if auto_confirm:
        print("\n✅ Auto-confirm enabled (--no-confirm)")
        print("✅ Starting copy sync...")
        return True

    print("\n" + "="*60)
    print("STARTUP CONFIRMATION")
    print("="*60)

    print("\nBefore starting, confirm:")
    print("  □ Tracked wallets and vaults above are correct")
    print("  □ Drift threshold and minimum order value are appropriate")
    if not testnet:
        print("  □ You understand real money is at risk")
        print("  □ You've tested on testnet first")

    response = input("\nType 'START' to continue: ").strip().upper()

    if response != 'START':
        print("❌ Startup cancelled")
        return False

    print("\n✅ Starting copy sync...")
    return True


def main():
    """Run pre-flight checks and start the service."""
    import argparse

    parser = argparse.ArgumentParser(description='Hyperliquid Copy Sync')
    parser.add_argument('--no-confirm', action='store_true',
                        help='Skip startup confirmation (for systemd/automated use)')
    args = parser.parse_args()

    try:
        if not confirm_startup(auto_confirm=args.no_confirm):
            sys.exit(1)

        import asyncio
        from src.main import main as service_main
        asyncio.run(service_main())

        print("\n\n✅ Copy sync stopped gracefully")

    except KeyboardInterrupt:
        print("\n\n⏹️  Shutdown requested (Ctrl+C)")
    except Exception as e:
        print(f"\n❌ Error: {e}")
        print("\nCheck copybot.log for details")
        sys.exit(1)


if __name__ == '__main__':
    main()
