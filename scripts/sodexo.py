#!/usr/bin/env python3
"""
Sodexo Benefícios Automation - card statements to OFX

Logs into the Sodexo Club portal, walks through every card's statement,
captures the statement JSON the portal fetches in the background and writes
one OFX file per card.
"""

import sys

import argparse
import asyncio
import hashlib
import json
import os
import traceback
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit
from xml.sax.saxutils import escape


def _load_dotenv(path: Path) -> None:
    """Best-effort .env loader (KEY=VALUE lines)."""
    try:
        if not path.exists():
            return
        for line in path.read_text().splitlines():
            s = line.strip()
            if not s or s.startswith("#") or "=" not in s:
                continue
            k, v = s.split("=", 1)
            k = k.strip()
            v = v.strip().strip('"').strip("'")
            if k and k not in os.environ:
                os.environ[k] = v
    except Exception:
        return


# Fast path: allow `--help` without requiring Playwright.
if "-h" in sys.argv or "--help" in sys.argv:
    async_playwright = None  # type: ignore[assignment]
    PlaywrightTimeout = TimeoutError  # type: ignore[assignment]
else:
    try:
        from playwright.async_api import async_playwright, TimeoutError as PlaywrightTimeout
    except ImportError:
        print("ERROR: playwright not installed. Run: pipx install playwright && playwright install chromium")
        sys.exit(1)

from network_idle import NetworkIdleTimeout, wait_for_network_idle

# Sodexo URLs
BASE_URL = "https://www.sodexobeneficios.com.br"
LOGIN_URL = f"{BASE_URL}/sodexo-club/login/"

# The portal reports wall-clock times in Brasília time, without an offset.
PORTAL_TZ = timezone(timedelta(hours=-3))

TYPING_DELAY = 48  # ms between keystrokes
LOGIN_IDLE_TIMEOUT = 3000  # ms

LOGIN_FORM = "form#form-login"
CARD_BALANCE_LINK = "#cards .info-card-holder .card-balance-link"
CARD_SELECT = "select#selectCard"
CARD_COMBO = ".card-select span#card-select.sod_select"
CONSULT_BUTTON = "#buttonConsult"
PERIOD_SELECT = "#period-select"


def _safe_url_for_logs(url: str | None) -> str:
    """Strip query and fragment from URLs before logging (they may carry session ids)."""
    if not url:
        return "<empty>"
    try:
        parts = urlsplit(url)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return "<redacted-url>"


def _short_hash(s: str) -> str:
    """Short, stable identifier for FITIDs and file names."""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:12]


# =============================================================================
# Browser flow
# =============================================================================

async def click_and_wait_idle(page, locator, *, tolerate_timeout: bool = False, **idle_kwargs) -> bool:
    """Click `locator` and wait for the network to settle.

    Returns False if the idle wait timed out and `tolerate_timeout` is set.
    If either side fails, the other is cancelled and awaited before raising.
    """
    tasks = [
        asyncio.ensure_future(locator.click()),
        asyncio.ensure_future(wait_for_network_idle(page, **idle_kwargs)),
    ]
    try:
        await asyncio.gather(*tasks)
    except (NetworkIdleTimeout, PlaywrightTimeout):
        if not tolerate_timeout:
            raise
        return False
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        # Collect sibling outcomes so nothing is left unretrieved.
        await asyncio.gather(*tasks, return_exceptions=True)
    return True


async def login(page, username: str, password: str) -> None:
    """Log into Sodexo Club with CPF/e-mail and password."""
    print("[login] Logging in...", flush=True)
    await page.goto(LOGIN_URL)

    await page.locator(f'{LOGIN_FORM} input[name="cpfEmail"]').press_sequentially(username, delay=TYPING_DELAY)
    await page.locator(f'{LOGIN_FORM} input[name="password"]').press_sequentially(password, delay=TYPING_DELAY)

    # The portal keeps polling after login; a short idle wait is enough.
    submit = page.locator(f'{LOGIN_FORM} button[type="submit"]')
    if not await click_and_wait_idle(page, submit, tolerate_timeout=True, timeout=LOGIN_IDLE_TIMEOUT):
        print("[login] Network still busy after submit, continuing", flush=True)

    print(f"[login] Landed on {_safe_url_for_logs(page.url)}", flush=True)


async def open_statement(page) -> None:
    """Navigate from the card overview to the statement page."""
    link = page.locator(CARD_BALANCE_LINK).first
    await link.wait_for()
    if not await click_and_wait_idle(page, link, tolerate_timeout=True, timeout=LOGIN_IDLE_TIMEOUT):
        print("[cards] Network still busy after opening statement, continuing", flush=True)
    await page.locator(CARD_SELECT).wait_for(state="attached")


class StatementCollector:
    """Collects `accountData` payloads from the portal's statement responses."""

    def __init__(self):
        self.account_data: list = []

    async def on_response(self, response) -> None:
        try:
            data = await response.json()
        except Exception:
            return
        self.feed(data)

    def feed(self, data) -> bool:
        """Record the account data in one response body; return True if kept."""
        if not isinstance(data, dict):
            return False
        if data.get("responseStatus") != "success" or not data.get("responseData"):
            return False
        try:
            response_data = json.loads(data["responseData"])
        except (TypeError, ValueError):
            return False
        if not isinstance(response_data, dict) or not response_data.get("accountData"):
            return False
        self.account_data.append(response_data["accountData"])
        return True


async def fetch_card_statements(page) -> list:
    """Select every card and its longest period; return the captured account data."""
    collector = StatementCollector()
    page.on("response", collector.on_response)
    try:
        count = await page.locator(f"{CARD_SELECT} option[data-product]").count()
        for i in range(count):
            print(f"[cards] Fetching card data: {i + 1} of {count}...", flush=True)

            await page.locator(CARD_COMBO).click()
            # nth-child is 1-based and the first option is the placeholder.
            await page.locator(f".card-select .sod_list .sod_option:nth-child({i + 2})").click()
            await click_and_wait_idle(page, page.locator(CONSULT_BUTTON))

            await page.locator(PERIOD_SELECT).click()
            await click_and_wait_idle(page, page.locator(f"{PERIOD_SELECT} .sod_list .sod_option:last-child"))
    finally:
        page.remove_listener("response", collector.on_response)

    return collector.account_data


# =============================================================================
# Transactions
# =============================================================================

_SIGNS = {"-": -1, "+": 1}


def normalize_hour(hour: str) -> str:
    """Normalize the portal's sloppy times: '8:3:2' -> '08:03:02', '0::' -> '00:00:00'."""
    hour = (hour or "").strip()
    if len(hour) == 8:
        return hour
    parts = hour.split(":")[:3]
    parts += [""] * (3 - len(parts))
    return ":".join(p.zfill(2) for p in parts)


def parse_transaction(raw: dict) -> dict | None:
    """Map one portal transaction to {id, date, memo, amount}."""
    sign = _SIGNS.get((raw.get("indicatorTransaction") or "").strip())
    if sign is None:
        print(f"[cards] Skipping transaction with unknown indicator: {raw.get('indicatorTransaction')!r}", flush=True)
        return None

    try:
        day = raw["date"]
        hour = normalize_hour(raw.get("hour"))
        memo = (raw.get("description") or "").strip()
        posted = datetime.fromisoformat(f"{day}T{hour}").replace(tzinfo=PORTAL_TZ)
        amount = float(raw["balance"]) * sign
    except (KeyError, TypeError, ValueError) as e:
        print(f"[cards] Skipping malformed transaction ({e!r}): {raw!r}", flush=True)
        return None

    id_string = raw.get("codeAuthorization") or ":".join([day, hour, memo])

    return {
        "id": _short_hash(str(id_string)),
        "date": posted,
        "memo": memo,
        "amount": amount,
    }


def cards_from_account_data(account_data: list) -> dict[str, list[dict]]:
    """Group transactions by card number; later responses win."""
    cards: dict[str, list[dict]] = {}
    for entry in account_data:
        if not isinstance(entry, list) or len(entry) != 1:
            continue
        statement = entry[0]
        card_number = statement.get("cardNumber")
        if not card_number:
            continue
        transactions = []
        for raw in statement.get("transactionData") or []:
            t = parse_transaction(raw)
            if t is not None:
                transactions.append(t)
        cards[str(card_number)] = transactions
    return cards


# =============================================================================
# OFX
# =============================================================================

def _ofx_date(dt: datetime) -> str:
    offset = dt.utcoffset() or timedelta(0)
    hours = offset.total_seconds() / 3600
    tz = f"{hours:g}"
    return f"{dt:%Y%m%d%H%M%S}[{tz}:GMT]"


def ofx_item(t: dict) -> str:
    trntype = "DEBIT" if t["amount"] < 0 else "CREDIT"
    return f"""
<STMTTRN>
<TRNTYPE>{trntype}
<DTPOSTED>{_ofx_date(t["date"])}
<TRNAMT>{t["amount"]:.2f}
<FITID>{t["id"]}</FITID>
<MEMO>{escape(t["memo"])}</MEMO>
</STMTTRN>
"""


def generate_ofx(transactions: list[dict], account_id: str) -> str:
    """Render a credit card statement as OFX 1.02 (SGML)."""
    date_range = ""
    if transactions:
        dates = [t["date"] for t in transactions]
        date_range = f"<DTSTART>{_ofx_date(min(dates))}\n<DTEND>{_ofx_date(max(dates))}\n"

    items = "\n".join(ofx_item(t) for t in transactions)
    return f"""
OFXHEADER:100
DATA:OFXSGML
VERSION:102
SECURITY:NONE
ENCODING:USASCII
CHARSET:1252
COMPRESSION:NONE
OLDFILEUID:NONE
NEWFILEUID:NONE

<OFX>
<SIGNONMSGSRSV1>
<SONRS>
<STATUS>
<CODE>0
<SEVERITY>INFO
</STATUS>

<LANGUAGE>POR
</SONRS>
</SIGNONMSGSRSV1>

<CREDITCARDMSGSRSV1>
<CCSTMTTRNRS>
<TRNUID>1001
<STATUS>
<CODE>0
<SEVERITY>INFO
</STATUS>

<CCSTMTRS>
<CURDEF>BRL
<CCACCTFROM>
<ACCTID>{account_id}
</CCACCTFROM>

<BANKTRANLIST>
{date_range}{items}
</BANKTRANLIST>

</CCSTMTRS>
</CCSTMTTRNRS>
</CREDITCARDMSGSRSV1>
</OFX>
"""


def write_ofx_files(cards: dict[str, list[dict]], output_dir: Path) -> list[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for card_number, transactions in cards.items():
        card_id = _short_hash(card_number)
        dest = output_dir / f"sodexo-{card_id}.ofx"
        dest.write_text(generate_ofx(transactions, card_id), encoding="cp1252", errors="replace")
        print(f"[ofx] Saved {len(transactions)} transactions: {dest}", flush=True)
        written.append(dest)
    return written


# =============================================================================
# CLI
# =============================================================================

async def export_statements(args) -> int:
    """Log in, fetch all card statements and write the OFX files."""
    headless = "headful" not in args.extra

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        try:
            page = await browser.new_page()
            await login(page, args.username, args.password)
            await open_statement(page)
            account_data = await fetch_card_statements(page)
        finally:
            await browser.close()

    cards = cards_from_account_data(account_data)
    if not cards:
        print("[sodexo] No card statements captured", flush=True)
        return 1

    files = write_ofx_files(cards, Path(args.output))
    print(f"\n[sodexo] Wrote {len(files)} OFX files", flush=True)
    return 0


def handle_error(extra: list[str], error: BaseException) -> int:
    """Report `error` on stderr; return the process exit code."""
    if "traceback" in extra:
        traceback.print_exception(type(error), error, error.__traceback__, file=sys.stderr)
    else:
        print(f"ERROR: {error}", file=sys.stderr, flush=True)
    return getattr(error, "exit_code", None) or 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Export Sodexo Benefícios card statements as OFX",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sodexo.py -u 12345678900 -p secret          # Write ./sodexo-<card>.ofx per card
  sodexo.py -u me@example.com -p secret -o ~/ofx
  SODEXO_USERNAME=... SODEXO_PASSWORD=... sodexo.py
        """
    )
    parser.add_argument("-u", "--username", default=os.environ.get("SODEXO_USERNAME"),
                        help="CPF or e-mail (or set SODEXO_USERNAME)")
    parser.add_argument("-p", "--password", default=os.environ.get("SODEXO_PASSWORD"),
                        help="Password (or set SODEXO_PASSWORD)")
    parser.add_argument("-o", "--output", default=".", help="Output directory (default: current directory)")
    parser.add_argument("-x", "--extra", action="append", default=[], help=argparse.SUPPRESS)
    return parser


def main(argv: list[str] | None = None) -> int:
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    _load_dotenv(Path.cwd() / ".env")
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.username:
        parser.error("--username is required (or set SODEXO_USERNAME)")
    if not args.password:
        parser.error("--password is required (or set SODEXO_PASSWORD)")

    try:
        return asyncio.run(export_statements(args))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        return handle_error(args.extra, e)


if __name__ == "__main__":
    sys.exit(main() or 0)
