"""
Tally Service Module
====================
Handles HTTP/XML communication with the Tally Gateway Server.

TALLY GATEWAY:
-------------
Tally exposes a local HTTP server (default port 9000) that accepts TDL
requests as XML and answers with XML. "Export" requests read, "Import"
requests write.

THROTTLING:
----------
Tally tolerates very little load. Every request goes through one lock and
waits until ``min_request_interval`` seconds have passed since the previous
request started, so calls are strictly sequential process-wide.

RESULTS:
-------
Public methods never raise. Failures are caught here and returned as
tagged results (success / error / error_kind), see models/results.py.
Inside the module, failures travel as the exceptions in exceptions.py.
"""

import asyncio
import time
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from ..config import TallyConfig
from ..exceptions import (
    ConnectionRefused,
    MalformedResponse,
    ProtocolError,
    RemoteRejected,
    TallyError,
    TallyTimeout,
    TransportError,
)
from ..models.master import Party, StockItem
from ..models.results import ConnectivityResult, DetailResult, FetchResult, MutationResult
from ..models.voucher import Voucher, VoucherAlteration, VoucherDraft, VoucherIdentity
from ..utils.decorators import timed
from ..utils.logger import logger
from . import voucher_parser as parser
from .xml_builder import XMLBuilder


class TallyService:
    """Throttled client for the Tally XML gateway"""

    def __init__(
        self,
        settings: TallyConfig,
        receipt_kinds: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server = settings.server
        self.port = settings.port
        self.base_url = f"http://{self.server}:{self.port}"
        self.timeout = settings.timeout
        self.min_interval = settings.min_request_interval
        self.receipt_kinds = list(receipt_kinds or [])
        self.builder = XMLBuilder(settings.company)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None
        self.request_count = 0

    @property
    def url(self) -> str:
        return self.base_url

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ============== Transport ==============

    async def _wait_for_slot(self) -> None:
        if self._last_request_at is None:
            return
        while True:
            remaining = self.min_interval - (time.monotonic() - self._last_request_at)
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    @timed
    async def send_xml(self, xml_request: str) -> str:
        """Send one request and return the decoded response text

        Raises ConnectionRefused, TallyTimeout or TransportError.
        """
        async with self._lock:
            await self._wait_for_slot()
            self._last_request_at = time.monotonic()
            self.request_count += 1
            try:
                response = await self._get_client().post(
                    self.base_url,
                    content=xml_request.encode("utf-16"),
                    headers={"Content-Type": "text/xml; charset=utf-16"},
                )
                response.raise_for_status()
            except httpx.ConnectError as e:
                raise ConnectionRefused(f"Cannot connect to Tally at {self.base_url}: {e}") from e
            except httpx.TimeoutException as e:
                raise TallyTimeout(f"Tally did not answer within {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise TransportError(f"Tally returned HTTP {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise TransportError(f"Tally request failed: {e}") from e

        return parser.decode_response(response.content)

    async def _request(self, xml_request: str) -> Dict[str, Any]:
        return parser.parse_envelope(await self.send_xml(xml_request))

    # ============== Reads ==============

    async def check_connectivity(self) -> ConnectivityResult:
        """Ask for the list of open companies; connected only on STATUS=1"""
        try:
            doc = await self._request(self.builder.company_list())
            status = parser.extract_scalar(parser.get_path(doc, "ENVELOPE", "HEADER", "STATUS"))
            if status != "1":
                raise RemoteRejected(f"Tally answered with STATUS={status or 'missing'}")
            return ConnectivityResult(connected=True, companies=parser.parse_companies(doc))
        except TallyError as e:
            logger.warning(f"Tally connectivity check failed: {e.detail}")
            return ConnectivityResult.failed(e, connected=False)

    async def _fetch_vouchers(self, xml_request: str, kinds: Optional[List[str]], label: str) -> FetchResult[Voucher]:
        try:
            doc = await self._request(xml_request)
            vouchers, skipped = parser.parse_vouchers(doc, self.receipt_kinds, kinds)
        except TallyError as e:
            logger.error(f"Error fetching {label} vouchers: {e.detail}")
            return FetchResult[Voucher].failed(e)
        return FetchResult[Voucher](records=vouchers, skipped=skipped)

    async def fetch_vouchers_since(self, cursor: int, kinds: Optional[List[str]] = None) -> FetchResult[Voucher]:
        """Vouchers with ALTERID above the cursor, excluding cancelled and optional ones"""
        return await self._fetch_vouchers(self.builder.vouchers_since(cursor, kinds), kinds, "incremental")

    async def fetch_vouchers_in_range(
        self, from_date: date, to_date: date, kinds: Optional[List[str]] = None
    ) -> FetchResult[Voucher]:
        return await self._fetch_vouchers(
            self.builder.vouchers_in_range(from_date, to_date, kinds), kinds, f"{from_date}..{to_date}"
        )

    async def fetch_all_voucher_identities(self, kinds: Optional[List[str]] = None) -> FetchResult[VoucherIdentity]:
        """GUID, MASTERID, kind and number of every non-cancelled voucher"""
        try:
            doc = await self._request(self.builder.voucher_identities(kinds))
            identities, skipped = parser.parse_identities(doc)
        except TallyError as e:
            logger.error(f"Error fetching voucher identities: {e.detail}")
            return FetchResult[VoucherIdentity].failed(e)
        if kinds:
            wanted = set(kinds)
            identities = [identity for identity in identities if identity.kind in wanted]
        return FetchResult[VoucherIdentity](records=identities, skipped=skipped)

    async def fetch_voucher_detail(self, remote_id: str) -> DetailResult:
        """Full voucher with line items

        The Object export is tried first; when it yields no voucher the
        same MASTERID is looked up through a filtered collection.
        """
        remote_id = str(remote_id).strip()
        if not remote_id.isdigit():
            return DetailResult.failed(MalformedResponse(f"Invalid MASTERID: {remote_id!r}"))

        try:
            raw = None
            try:
                raw = parser.find_detail_voucher(await self._request(self.builder.voucher_object(remote_id)))
            except ProtocolError as e:
                logger.warning(f"Object export for MASTERID {remote_id} failed: {e.detail}")
            except RemoteRejected as e:
                logger.warning(f"Object export for MASTERID {remote_id} rejected: {e.detail}")

            if raw is None:
                logger.info(f"Voucher {remote_id} not in Object export, trying collection")
                raw = parser.find_detail_voucher(await self._request(self.builder.voucher_by_master_id(remote_id)))
            if raw is None:
                raise RemoteRejected(f"Voucher with MASTERID {remote_id} not found")

            try:
                voucher = parser.parse_voucher(raw, self.receipt_kinds)
            except ValueError as e:
                raise MalformedResponse(f"Voucher {remote_id} could not be parsed: {e}") from e
        except TallyError as e:
            logger.error(f"Error fetching voucher detail {remote_id}: {e.detail}")
            return DetailResult.failed(e)

        return DetailResult(voucher=voucher, line_items=voucher.line_items)

    async def fetch_stock_items_since(self, cursor: int) -> FetchResult[StockItem]:
        try:
            doc = await self._request(self.builder.stock_items_since(cursor))
            items, skipped = parser.parse_stock_items(doc)
        except TallyError as e:
            logger.error(f"Error fetching stock items: {e.detail}")
            return FetchResult[StockItem].failed(e)
        return FetchResult[StockItem](records=items, skipped=skipped)

    async def fetch_parties_since(self, cursor: int, group: str) -> FetchResult[Party]:
        """Ledgers anywhere under ``group`` (e.g. Sundry Debtors) changed after the cursor"""
        group_type = "creditor" if "creditor" in group.lower() else "debtor"
        try:
            doc = await self._request(self.builder.parties_since(cursor, group))
            parties, skipped = parser.parse_parties(doc, group_type)
        except TallyError as e:
            logger.error(f"Error fetching parties under {group}: {e.detail}")
            return FetchResult[Party].failed(e)
        return FetchResult[Party](records=parties, skipped=skipped)

    # ============== Writes ==============

    async def _mutate(self, xml_request: str, label: str) -> MutationResult:
        try:
            doc = await self._request(xml_request)
            remote_id, changed = parser.resolve_import_response(doc)
        except TallyError as e:
            logger.error(f"{label} failed: {e.detail}")
            return MutationResult.failed(e)
        logger.info(f"{label} applied: changed={changed}, remote_id={remote_id}")
        return MutationResult(remote_id=remote_id, changed_count=changed)

    async def create_voucher(self, draft: VoucherDraft) -> MutationResult:
        logger.info(f"Creating {draft.kind} for {draft.counterparty_name}, amount {draft.total}")
        return await self._mutate(self.builder.create_voucher(draft), f"Create {draft.kind}")

    async def update_voucher(self, alteration: VoucherAlteration) -> MutationResult:
        return await self._mutate(
            self.builder.alter_voucher(alteration), f"Alter voucher {alteration.remote_id}"
        )

    async def delete_voucher(self, remote_id: str, kind: str) -> MutationResult:
        return await self._mutate(
            self.builder.delete_voucher(remote_id, kind), f"Delete voucher {remote_id}"
        )
