"""
Research-portal fallback extraction.

When a spreadsheet cannot be parsed, the same headline figures are read
from the publisher's login-protected portal.  One PortalSession serves
every queued (period, region) of a coordinator run:

    logged_out -> authenticating -> form_ready -> filtered -> row_located -> parsed

After each extraction the session returns to ``form_ready``.  A timeout
while logging in raises AuthenticationError; any browser error while
filtering raises NavigationError; a table without the period's row raises
RowNotFoundError listing the labels that were visible.

Usage::

    with PortalSession(schema, url, user, password) as portal:
        record = portal.extract(Period(2, 2010), "ES")
"""

from __future__ import annotations

import logging

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from downloader.sources import PortalBrowser
from pipeline.errors import (
    AuthenticationError,
    NavigationError,
    RowNotFoundError,
    ValidationError,
)
from pipeline.families import FIELD_NUMBER, FamilySchema
from pipeline.periods import Period
from pipeline.records import METHOD_SECONDARY, CanonicalRecord
from utils.patterns import MULTI_SPACE, PORTAL_LABEL, TAB_RUNS
from utils.strings import parse_decimal

logger = logging.getLogger(__name__)

STATE_LOGGED_OUT = "logged_out"
STATE_AUTHENTICATING = "authenticating"
STATE_FORM_READY = "form_ready"
STATE_FILTERED = "filtered"
STATE_ROW_LOCATED = "row_located"
STATE_PARSED = "parsed"

LOGIN_TIMEOUT_MS = 10000
STEP_TIMEOUT_MS = 15000
DEFAULT_SETTLE_MS = 3000


def _split_row(text: str, expected: int) -> list[str]:
    tokens = [t.strip() for t in TAB_RUNS.split(text.strip()) if t.strip()]
    if len(tokens) < expected + 1:
        tokens = [t.strip() for t in MULTI_SPACE.split(text.strip()) if t.strip()]
    return tokens


def _row_label(text: str) -> str:
    tokens = [t.strip() for t in TAB_RUNS.split(text.strip()) if t.strip()]
    if not tokens:
        return ""
    first = tokens[0]
    if not PORTAL_LABEL.match(first):
        spaced = MULTI_SPACE.split(text.strip())
        first = spaced[0].strip() if spaced else ""
    return first


def available_labels(rows: list[str]) -> list[str]:
    """Period labels visible in the portal table, in table order."""
    labels = []
    for text in rows:
        if not text or not text.strip():
            continue
        label = _row_label(text)
        if PORTAL_LABEL.match(label):
            labels.append(label)
    return labels


def parse_portal_rows(rows: list[str], period: Period, schema: FamilySchema) -> list[str]:
    """Raw value tokens of the row labelled with ``period``.

    Raises:
        RowNotFoundError: no row carries the period label.
        ValidationError: the row holds fewer tokens than the family needs.
    """
    target = period.portal_label()
    expected = schema.portal_value_count
    for text in rows:
        if not text or target not in text:
            continue
        tokens = _split_row(text, expected)
        if len(tokens) < expected + 1:
            raise ValidationError(
                f"Portal row {target} has {max(len(tokens) - 1, 0)} of {expected} values"
            )
        return tokens[1:1 + expected]
    raise RowNotFoundError(target, available_labels(rows))


def tokens_to_values(tokens: list[str], schema: FamilySchema) -> dict:
    if schema.field_kind == FIELD_NUMBER:
        converted = [parse_decimal(t) for t in tokens]
    else:
        converted = list(tokens)
    return dict(zip(schema.canonical_fields, converted))


class PortalSession:
    """Authenticated browser session against one family's portal page."""

    def __init__(
        self,
        schema: FamilySchema,
        portal_url: str,
        username: str,
        password: str,
        settle_ms: int = DEFAULT_SETTLE_MS,
        headless: bool | None = None,
    ):
        self.schema = schema
        self.portal_url = portal_url or schema.portal_url
        self.username = username
        self.password = password
        self.settle_ms = settle_ms
        self.headless = headless
        self.state = STATE_LOGGED_OUT
        self.page = None
        self._browser: PortalBrowser | None = None

    def __enter__(self) -> "PortalSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Start this session's own browser; a launch failure is a NavigationError."""
        self._browser = PortalBrowser(headless=self.headless)
        try:
            context = self._browser.start()
            self.page = context.new_page()
        except PlaywrightError as exc:
            self._browser.close()
            self._browser = None
            raise NavigationError(
                f"{self.schema.name.upper()} portal browser could not start: {exc}"
            ) from exc
        self.page.set_default_timeout(STEP_TIMEOUT_MS)
        self.state = STATE_LOGGED_OUT

    def close(self) -> None:
        try:
            if self.page is not None:
                self.page.close()
        except PlaywrightError as exc:
            logger.debug("Ignoring error closing portal page: %s", exc)
        finally:
            self.page = None
            self.state = STATE_LOGGED_OUT
            if self._browser is not None:
                self._browser.close()
                self._browser = None

    def login(self) -> None:
        """Authenticate and wait for the search form."""
        if self.page is None:
            self.open()
        page = self.page
        self.state = STATE_AUTHENTICATING
        logger.info("Logging in to %s portal", self.schema.name.upper())
        try:
            page.goto(self.portal_url)
            page.wait_for_selector("#log")
            page.wait_for_selector("#pwd")
            page.fill("#log", self.username)
            page.fill("#pwd", self.password)
            page.click("#actionLogin")
            page.wait_for_selector("#formPesquisa", timeout=LOGIN_TIMEOUT_MS)
        except PlaywrightTimeoutError as exc:
            self.state = STATE_LOGGED_OUT
            raise AuthenticationError(
                f"{self.schema.name.upper()} portal login did not reach the search form: {exc}"
            ) from exc
        except PlaywrightError as exc:
            self.state = STATE_LOGGED_OUT
            raise AuthenticationError(
                f"{self.schema.name.upper()} portal login failed: {exc}"
            ) from exc
        self.state = STATE_FORM_READY

    def _filter(self, period: Period, region: str) -> list[str]:
        page = self.page
        try:
            page.wait_for_selector("#formPesquisa")
            page.locator("#selectAno").select_option(str(period.year))
            page.locator("#selectMes").select_option(str(period.month))
            page.locator("#selectEstado").select_option(region)
            page.get_by_role("button", name="Filtrar").click()
            page.wait_for_timeout(self.settle_ms)
            self.state = STATE_FILTERED
            table = page.frame_locator("#dadosPesquisa").get_by_role("table")
            return table.locator("tr").all_inner_texts()
        except PlaywrightError as exc:
            self.state = STATE_FORM_READY
            raise NavigationError(
                f"Portal navigation failed for {region} {period.label()}: {exc}"
            ) from exc

    def extract(self, period: Period, region: str) -> CanonicalRecord:
        """Read one (period, region) from the portal table."""
        if self.state == STATE_LOGGED_OUT:
            self.login()
        logger.info("Portal lookup %s %s %s", self.schema.name.upper(), region, period.label())
        rows = self._filter(period, region)
        try:
            tokens = parse_portal_rows(rows, period, self.schema)
        except (RowNotFoundError, ValidationError):
            self.state = STATE_FORM_READY
            raise
        self.state = STATE_ROW_LOCATED
        values = tokens_to_values(tokens, self.schema)
        self.state = STATE_PARSED
        record = CanonicalRecord(
            family=self.schema.name,
            period=period,
            region=region,
            method=METHOD_SECONDARY,
            values=values,
        )
        self.state = STATE_FORM_READY
        return record
