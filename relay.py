#!/usr/bin/env python3
import os
import re
import sys
import json
import time
import signal
import logging
import argparse
import threading
from dataclasses import dataclass, field
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

import gspread
from google.oauth2.service_account import Credentials
from dotenv import find_dotenv, load_dotenv

__version__ = "0.1.0"

logger = logging.getLogger("relay")

# ===================== Config via CLI / Env =====================

DEFAULT_TAB = "Queue"
DEFAULT_TZ = "America/Toronto"
DEFAULT_POLL_SECONDS = 60
DEFAULT_ROLE_FILE = "roles.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

def parse_args(argv=None):
    ap = argparse.ArgumentParser(prog="relay", description="Relay scheduled messages from a Google Sheet to Discord.")
    ap.add_argument("--sheet", default=os.getenv("GOOGLE_SHEET_ID", ""), help="Google Sheet ID")
    ap.add_argument("--tab", default=os.getenv("SHEET_TAB_NAME", DEFAULT_TAB), help="Worksheet name (tab)")
    ap.add_argument("--timezone", default=os.getenv("TIMEZONE", DEFAULT_TZ), help="IANA zone of send_at values")
    ap.add_argument("--poll-seconds", type=int, default=os.getenv("POLL_SECONDS", str(DEFAULT_POLL_SECONDS)))
    ap.add_argument("--roles", default=os.getenv("ROLE_MAP_FILE", DEFAULT_ROLE_FILE), help="Role map JSON file")
    ap.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    ap.add_argument("--dry-run", action="store_true", default=os.getenv("DRY_RUN", "0") == "1",
                    help="Log what would be sent without sending or marking rows")
    ap.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=os.getenv("LOG_LEVEL", "INFO"))
    ap.add_argument("--log-file", default=os.getenv("LOG_FILE", ""), help="Mirror log lines to this file")
    args = ap.parse_args(argv)
    # argparse does not check string defaults (LOG_LEVEL) against choices
    if args.log_level not in LOG_LEVELS:
        ap.error(f"invalid LOG_LEVEL {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")
    return args

@dataclass(frozen=True)
class Settings:
    bot_token: str
    sheet_id: str
    tab: str = DEFAULT_TAB
    timezone: str = DEFAULT_TZ
    poll_seconds: int = DEFAULT_POLL_SECONDS
    dry_run: bool = False

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

def settings_from_args(args) -> "Settings":
    """Combine CLI options with env-only secrets. Raises ConfigError on anything fatal."""
    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    if not token:
        raise ConfigError("DISCORD_BOT_TOKEN is not set")
    if not (args.sheet or "").strip():
        raise ConfigError("No Google Sheet ID (use --sheet or GOOGLE_SHEET_ID)")
    if args.poll_seconds <= 0:
        raise ConfigError(f"Poll interval must be positive, got {args.poll_seconds}")
    try:
        ZoneInfo(args.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone: {args.timezone!r}") from e
    return Settings(
        bot_token=token,
        sheet_id=args.sheet.strip(),
        tab=args.tab,
        timezone=args.timezone,
        poll_seconds=args.poll_seconds,
        dry_run=args.dry_run,
    )

# ===================== Logging =====================

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

def configure_logging(level="INFO", log_file=""):
    """Log to stderr, and mirror to log_file when given (kept as a run artifact)."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=str(level).upper(), format=LOG_FORMAT, handlers=handlers, force=True)

# ===================== Errors =====================

class ConfigError(RuntimeError):
    """Fatal at startup: the relay cannot run with this configuration."""

class MissingColumnError(RuntimeError):
    """Fatal for one cycle: the sheet header lacks a required column."""

# ===================== Date & Text Helpers =====================

TRUTHY = {"1", "true", "yes", "on"}
SEND_AT_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %I:%M %p")
# zero-padded month, day, minutes and seconds; the hour may be one digit
SEND_AT_SHAPE = re.compile(r"\d{4}-\d{2}-\d{2} \d{1,2}:\d{2}(?::\d{2})?(?: [AaPp][Mm])?")
SENT_AT_FORMAT = "%Y-%m-%d %H:%M"

def normalize_bool(v) -> bool:
    if isinstance(v, bool):
        return v
    if not v:
        return False
    return str(v).strip().lower() in TRUTHY

def parse_send_at(raw, tz: ZoneInfo):
    """Parse a send_at cell in tz; return an aware datetime or None."""
    if raw is None:
        return None
    # Sheets emit NBSP / narrow NBSP (before AM/PM) invisibly
    s = str(raw).replace("\xa0", " ").replace("\u202f", " ").strip()
    if not SEND_AT_SHAPE.fullmatch(s):
        return None
    for fmt in SEND_AT_FORMATS:
        try:
            return datetime.strptime(s, fmt).replace(tzinfo=tz)
        except ValueError:
            pass
    return None

def format_sent_at(dt: datetime) -> str:
    return dt.strftime(SENT_AT_FORMAT)

# ===================== Role Mentions =====================

def load_role_map(path=None, inline=None) -> dict:
    """
    Load {role name: role id} from inline JSON (ROLE_MAP_JSON) or a file.
    Malformed content degrades to {} with a warning; never raises.
    """
    inline = os.getenv("ROLE_MAP_JSON", "") if inline is None else inline
    source = "ROLE_MAP_JSON"
    text = inline
    if not text:
        if not path or not os.path.exists(path):
            logger.info("No role map found (%s); mentions will not be rewritten", path or "unset")
            return {}
        source = path
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            logger.warning("Could not read role map %s: %s", path, e)
            return {}
    try:
        data = json.loads(text)
    except ValueError as e:
        logger.warning("Role map from %s is not valid JSON (%s); using empty map", source, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Role map from %s must be a JSON object; using empty map", source)
        return {}

    roles = {}
    for name, role_id in data.items():
        name, role_id = str(name).strip(), str(role_id).strip()
        if name and role_id:
            roles[name] = role_id
    logger.info("Loaded %d role(s) from %s", len(roles), source)
    return roles

def _role_pattern(name: str):
    return re.compile(rf"(^|\s)@{re.escape(name)}s?\b", re.I)

def apply_role_mentions(text: str, roles: dict) -> str:
    """Rewrite @RoleName / @RoleNames as Discord role mentions (<@&id>)."""
    if not text or not roles:
        return text
    # Longest first so "@Dev Team" is not consumed by "@Dev"; sorted() is stable for ties.
    for name in sorted(roles, key=len, reverse=True):
        mention = f"<@&{roles[name]}>"
        text = _role_pattern(name).sub(lambda m: m.group(1) + mention, text)
    return text

# ===================== Google Sheets I/O =====================

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
READ_COLUMNS = "A:F"

def load_credentials():
    """Service account from GOOGLE_SERVICE_ACCOUNT_KEY (inline JSON) or GOOGLE_SERVICE_ACCOUNT_JSON (file)."""
    inline = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY", "").strip()
    if inline:
        try:
            info = json.loads(inline)
            if not isinstance(info, dict):
                raise ValueError("expected a JSON object")
            return Credentials.from_service_account_info(info, scopes=SCOPES)
        except ValueError as e:
            raise ConfigError(f"GOOGLE_SERVICE_ACCOUNT_KEY is not a valid service account: {e}") from e

    key_file = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON", "").strip()
    if not key_file or not os.path.exists(key_file):
        raise ConfigError(
            f"No GOOGLE_SERVICE_ACCOUNT_KEY env var set and JSON file not found at: {key_file or '<unset>'}"
        )
    try:
        return Credentials.from_service_account_file(key_file, scopes=SCOPES)
    except ValueError as e:
        raise ConfigError(f"{key_file} is not a valid service account file: {e}") from e

def gs_client(creds=None):
    return gspread.authorize(creds or load_credentials())

def col_letter(idx: int) -> str:
    """0-based column index -> A1 letter (0 -> A, 26 -> AA)."""
    letters = ""
    n = idx + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters

class SheetQueue:
    """
    The queue tab: read every row, mark a single row as sent.

    The spreadsheet is opened on first use and cached, so a Sheets outage
    surfaces as a failed cycle instead of a failed startup.
    """

    def __init__(self, spreadsheet=None, tab: str = DEFAULT_TAB, client=None, sheet_id: str = ""):
        self._spreadsheet = spreadsheet
        self.tab = tab
        self.client = client
        self.sheet_id = sheet_id

    @classmethod
    def open(cls, sheet_id: str, tab: str, client=None):
        return cls(tab=tab, client=client or gs_client(), sheet_id=sheet_id)

    @property
    def spreadsheet(self):
        if self._spreadsheet is None:
            self._spreadsheet = self.client.open_by_key(self.sheet_id)
        return self._spreadsheet

    def _range(self, a1: str) -> str:
        return "'{}'!{}".format(self.tab.replace("'", "''"), a1)

    def read_rows(self):
        res = self.spreadsheet.values_get(self._range(READ_COLUMNS))
        return res.get("values", [])

    def mark_sent(self, row_number: int, sent_col: int, sent_at_col: int, sent_at: str):
        """Write "TRUE" and sent_at into one row; columns are 0-based header positions."""
        params = {"valueInputOption": "USER_ENTERED"}
        if sent_at_col == sent_col + 1:
            a1 = f"{col_letter(sent_col)}{row_number}:{col_letter(sent_at_col)}{row_number}"
            self.spreadsheet.values_update(
                self._range(a1), params=params, body={"values": [["TRUE", sent_at]]}
            )
            return
        self.spreadsheet.values_batch_update({
            "valueInputOption": "USER_ENTERED",
            "data": [
                {"range": self._range(f"{col_letter(sent_col)}{row_number}"), "values": [["TRUE"]]},
                {"range": self._range(f"{col_letter(sent_at_col)}{row_number}"), "values": [[sent_at]]},
            ],
        })

# ===================== Discord REST =====================

DISCORD_API = "https://discord.com/api/v10"
# GUILD_TEXT, DM, GUILD_VOICE, GROUP_DM, GUILD_ANNOUNCEMENT, threads, GUILD_STAGE_VOICE
TEXT_CHANNEL_TYPES = {0, 1, 2, 3, 5, 10, 11, 12, 13}
ALLOWED_MENTIONS = {"parse": ["roles", "everyone"]}

def make_session(token: str):
    sess = requests.Session()
    # Only reads are retried; a retried POST could post twice.
    retry = Retry(
        total=3,
        connect=3,
        read=3,
        backoff_factor=1.0,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    sess.mount("https://", adapter)
    sess.headers.update({
        "Authorization": f"Bot {token}",
        "User-Agent": f"DiscordBot (sheet-relay, {__version__})",
        "Content-Type": "application/json",
    })
    return sess

class DiscordClient:
    def __init__(self, token: str, session=None, timeout: int = 15):
        self.session = session or make_session(token)
        self.timeout = timeout

    def whoami(self) -> dict:
        r = self.session.get(f"{DISCORD_API}/users/@me", timeout=self.timeout)
        if r.status_code == 401:
            raise ConfigError("Discord rejected the bot token")
        r.raise_for_status()
        return r.json()

    def fetch_channel(self, channel_id: str):
        """Channel object, or None when the id is unknown or not visible to the bot."""
        r = self.session.get(f"{DISCORD_API}/channels/{channel_id}", timeout=self.timeout)
        if r.status_code in (400, 403, 404):
            return None
        r.raise_for_status()
        return r.json()

    @staticmethod
    def is_text_channel(channel) -> bool:
        return bool(channel) and channel.get("type") in TEXT_CHANNEL_TYPES

    def send_message(self, channel_id: str, content: str) -> dict:
        r = self.session.post(
            f"{DISCORD_API}/channels/{channel_id}/messages",
            json={"content": content, "allowed_mentions": ALLOWED_MENTIONS},
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()

    def close(self):
        self.session.close()

# ===================== Relay Context =====================

@dataclass
class RelayContext:
    """Everything a cycle needs; built once before the first cycle, read-only after."""
    settings: Settings
    sheet: SheetQueue
    discord: DiscordClient
    roles: dict = field(default_factory=dict)

    def close(self):
        self.discord.close()

def build_context(settings: Settings, role_file=None, gc=None, discord=None) -> RelayContext:
    """
    Build credentials and log in to Discord; failures here are ConfigError.
    The sheet itself is only touched by the first cycle.
    """
    if gc is None:
        gc = gs_client(load_credentials())
    discord = discord or DiscordClient(settings.bot_token)
    try:
        me = discord.whoami()
    except requests.RequestException as e:
        discord.close()
        raise ConfigError(f"Discord login failed: {e}") from e
    except ConfigError:
        discord.close()
        raise
    logger.info("Logged in to Discord as %s", me.get("username", "?"))
    sheet = SheetQueue.open(settings.sheet_id, settings.tab, client=gc)
    return RelayContext(settings=settings, sheet=sheet, discord=discord, roles=load_role_map(role_file))

# ===================== Dispatch Cycle =====================

REQUIRED_COLUMNS = ("send_at", "channel_id", "message", "sent", "sent_at")

@dataclass
class CycleStats:
    rows: int = 0
    sent: int = 0
    not_due: int = 0
    skipped: int = 0
    invalid: int = 0
    failed: int = 0

def header_index(header) -> dict:
    norm = [str(h).strip().lower() for h in header]
    missing = [c for c in REQUIRED_COLUMNS if c not in norm]
    if missing:
        raise MissingColumnError(f"Missing required column(s) {', '.join(missing)} in sheet header")
    return {c: norm.index(c) for c in REQUIRED_COLUMNS}

def _cell(row, i):
    return row[i] if i < len(row) and row[i] is not None else ""

def run_cycle(ctx: RelayContext, now=None) -> CycleStats:
    """
    One read-evaluate-dispatch pass over the queue.

    Raises MissingColumnError when the header is incomplete; every per-row
    problem is logged and counted instead.
    """
    tz = ctx.settings.tz
    now = now or datetime.now(tz)
    stats = CycleStats()

    rows = ctx.sheet.read_rows()
    if len(rows) < 2:
        return stats

    idx = header_index(rows[0])

    for i, row in enumerate(rows[1:], start=2):
        stats.rows += 1
        if normalize_bool(_cell(row, idx["sent"])):
            stats.skipped += 1
            continue

        send_at_raw = _cell(row, idx["send_at"])
        channel_id = str(_cell(row, idx["channel_id"])).strip()
        message = _cell(row, idx["message"])
        # a blank-looking send_at goes on to the parser and warns
        if not send_at_raw or not channel_id or not str(message).strip():
            stats.skipped += 1
            continue

        send_at = parse_send_at(send_at_raw, tz)
        if send_at is None:
            logger.warning("Row %d: invalid send_at format %r", i, send_at_raw)
            stats.invalid += 1
            continue

        if send_at > now:
            stats.not_due += 1
            continue

        try:
            channel = ctx.discord.fetch_channel(channel_id)
            if not ctx.discord.is_text_channel(channel):
                logger.warning("Row %d: invalid or non-text channel ID %r", i, channel_id)
                stats.invalid += 1
                continue

            content = apply_role_mentions(str(message), ctx.roles)
            sent_at = format_sent_at(now)
            if ctx.settings.dry_run:
                logger.info("Row %d: [dry-run] would send to channel %s: %r", i, channel_id, content)
                continue

            ctx.discord.send_message(channel_id, content)
            logger.info("Row %d: message sent to channel %s", i, channel_id)
            try:
                ctx.sheet.mark_sent(i, idx["sent"], idx["sent_at"], sent_at)
            except Exception as e:
                # delivered but unmarked: the next cycle will send it again
                logger.error("Row %d: sent to channel %s but could not mark sent (%s); it will be resent",
                             i, channel_id, e)
                stats.failed += 1
                continue
            logger.info("Row %d: marked TRUE, sent at %s", i, sent_at)
            stats.sent += 1
        except Exception as e:
            logger.error("Row %d: error sending message to channel %s: %s", i, channel_id, e)
            stats.failed += 1

    logger.info(
        "Cycle done: %d rows · %d sent · %d not due · %d skipped · %d invalid · %d failed",
        stats.rows, stats.sent, stats.not_due, stats.skipped, stats.invalid, stats.failed,
    )
    return stats

# ===================== Scheduler =====================

def run_forever(ctx: RelayContext, poll_seconds: int, stop_event=None, cycle=run_cycle):
    """
    Run a cycle now, then every poll_seconds until stop_event is set.
    The next cycle is scheduled only after the previous one returns, so cycles never overlap.
    """
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        started = time.monotonic()
        try:
            cycle(ctx)
        except MissingColumnError as e:
            logger.error("Cycle aborted: %s", e)
        except Exception:
            logger.exception("Error in cycle")
        wait = max(0.0, poll_seconds - (time.monotonic() - started))
        stop_event.wait(wait)

def _install_signal_handlers(stop_event):
    def _stop(signum, _frame):
        logger.info("Received %s, stopping after the current cycle", signal.Signals(signum).name)
        stop_event.set()
    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

# ===================== Main =====================

def main(argv=None) -> int:
    load_dotenv(find_dotenv(usecwd=True), override=False)
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        settings = settings_from_args(args)
        ctx = build_context(settings, role_file=args.roles)
    except ConfigError as e:
        logger.error("Startup failed: %s", e)
        return 1

    try:
        if args.once:
            try:
                run_cycle(ctx)
            except Exception:
                logger.exception("Cycle failed")
                return 1
            return 0

        logger.info("Polling '%s' every %d seconds (%s)%s", settings.tab, settings.poll_seconds,
                    settings.timezone, " [dry-run]" if settings.dry_run else "")
        stop_event = threading.Event()
        _install_signal_handlers(stop_event)
        run_forever(ctx, settings.poll_seconds, stop_event)
        return 0
    finally:
        ctx.close()

# ===================== Runner =====================

if __name__ == "__main__":
    sys.exit(main())
