#!/usr/bin/env python3
"""
VaultIngest v1.0.0: main entry point.
Sends short-form video URLs through the processing service and saves the
results as resources in the local vault.
"""

import sys
import os
import argparse
import logging
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vault_ingest.core.constants import APP_NAME, APP_DISPLAY_NAME, APP_VERSION, LOG_DIR
from vault_ingest.core.config import AppConfig
from vault_ingest.core.api_client import ShortFormApiClient
from vault_ingest.core.storage import SqliteResourceStore
from vault_ingest.core.orchestrator import (
    OrchestrationSession, ProcessingController, ControllerSnapshot, Phase, Action,
)
from vault_ingest.core.security_utils import (
    keychain_get_token, keychain_set_token, keychain_delete_token, redact_token,
)
from vault_ingest.core.url_detect import parse_input_lines

LOG_FILE = LOG_DIR / "app.log"
logger = logging.getLogger("vault-ingest")

# Phases that count as success for the exit code
_OK_PHASES = (Phase.COMPLETED, Phase.ALREADY_PROCESSED)


def setup_logging(verbose: bool = False):
    """File log always; console gets warnings, or everything with --verbose."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            console,
        ],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-ingest",
        description=f"{APP_DISPLAY_NAME}: add TikTok, YouTube Shorts and Instagram Reels "
                    "to your knowledge vault.",
    )
    parser.add_argument("urls", nargs="*",
                        help="Video URLs. Read from stdin (one per line) when omitted.")
    parser.add_argument("--token", help="Access token (defaults to $VAULT_ACCESS_TOKEN, then the keychain)")
    parser.add_argument("--save-token", action="store_true",
                        help="Store the access token from --token or $VAULT_ACCESS_TOKEN in the keychain")
    parser.add_argument("--forget-token", action="store_true",
                        help="Remove the stored access token from the keychain")
    parser.add_argument("--reprocess", action="store_true",
                        help="Process again even if the video was already processed")
    parser.add_argument("--no-transcript", action="store_true",
                        help="Skip transcript extraction")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    return parser


def resolve_token(cli_token: str | None) -> str | None:
    return cli_token or os.environ.get("VAULT_ACCESS_TOKEN") or keychain_get_token()


def handle_token_commands(args) -> int | None:
    """Run --save-token / --forget-token. Returns an exit code, or None when neither was given."""
    if args.forget_token:
        if keychain_delete_token():
            print("Access token removed from the keychain.")
            return 0
        print("No stored access token was removed.", file=sys.stderr)
        return 1

    if args.save_token:
        token = args.token or os.environ.get("VAULT_ACCESS_TOKEN")
        if not token:
            print("Pass the token with --token or $VAULT_ACCESS_TOKEN.", file=sys.stderr)
            return 2
        if not keychain_set_token(token):
            print("Could not store the access token in the keychain.", file=sys.stderr)
            return 1
        logger.info("Stored access token %s", redact_token(token))
        print("Access token saved to the keychain.")
        return 0

    return None


def load_config(no_transcript: bool = False) -> AppConfig:
    config = AppConfig()
    # environment overrides are not persisted
    for key, env in (('functions_base_url', 'VAULT_FUNCTIONS_URL'),
                     ('supabase_url', 'VAULT_SUPABASE_URL')):
        if os.environ.get(env):
            config.override(key, os.environ[env])
    if no_transcript:
        config.override('include_transcript', False)
    return config


_last_printed: dict[str, tuple] = {}


def print_snapshot(snap: ControllerSnapshot):
    """Print one line per visible change."""
    line = snap.progress_label or snap.message
    if snap.phase == Phase.POLLING and snap.progress:
        line = f"{line} ({snap.progress}%)"
    key = (snap.normalized_url, snap.phase, line)
    if not line or _last_printed.get(snap.normalized_url) == key:
        return
    _last_printed[snap.normalized_url] = key
    print(f"  {line}")


def process_url(session: OrchestrationSession, client: ShortFormApiClient,
                config: AppConfig, raw_url: str, reprocess: bool = False) -> bool:
    controller = ProcessingController(session, client, config=config.as_dict())
    controller.on_state_changed = print_snapshot
    controller.on_notice = lambda title, message: print(f"  {title}: {message}")
    controller.on_navigate = lambda resource_id: print(f"  Saved as resource {resource_id}")

    print(raw_url)
    result = controller.set_url(raw_url)
    if not result.is_supported:
        snap = controller.snapshot
        print(f"  {snap.message or 'Nothing to do'}")
        if snap.next_action:
            print(f"  {snap.next_action}")
        return False

    snap = controller.run()
    if reprocess and snap.phase == Phase.ALREADY_PROCESSED:
        snap = controller.reprocess()

    if snap.phase == Phase.ALREADY_PROCESSED:
        if snap.existing_resource_id:
            print(f"  Already in your vault as {snap.existing_resource_id}")
        elif Action.IMPORT_EXISTING in snap.actions:
            snap = controller.import_existing()
    elif snap.phase in (Phase.FAILED, Phase.STALLED):
        print(f"  Error [{snap.error.code if snap.error else 'unknown'}]: {snap.message}")
        if snap.next_action:
            print(f"  {snap.next_action}")

    return snap.phase in _OK_PHASES


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    # token commands may be combined with URLs; a failure stops the run
    status = handle_token_commands(args)
    if status is not None and (status != 0 or not args.urls):
        return status

    urls = args.urls or parse_input_lines(sys.stdin.read())
    if not urls:
        print("No URLs given.", file=sys.stderr)
        return 2

    config = load_config(args.no_transcript)
    token = resolve_token(args.token)
    logger.info("Functions URL: %s, token: %s", config.functions_base_url, redact_token(token))

    store = SqliteResourceStore(config.db_path)
    try:
        client = ShortFormApiClient(config.functions_base_url, token,
                                    timeout=config.get('request_timeout_sec'))
        session = OrchestrationSession(store)
        results = [process_url(session, client, config, url, reprocess=args.reprocess)
                   for url in urls]
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        logger.critical("Fatal error: %s\n%s", e, traceback.format_exc())
        print(f"Fatal error: {type(e).__name__}: {e}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1
    finally:
        store.close()

    return 0 if all(results) else 1


if __name__ == "__main__":
    sys.exit(main())
