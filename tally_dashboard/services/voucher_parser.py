"""
Voucher Parser Module
=====================
Turns raw Tally XML responses into normalized models.

RESPONSE SHAPES:
---------------
Tally's XML is loose. The same field can arrive as
- a bare value:            <AMOUNT>500.00</AMOUNT>
- a typed wrapper:         <AMOUNT TYPE="Amount">500.00</AMOUNT>
- nothing at all:          (field omitted)
and a collection with one record is indistinguishable from a single
object. element_to_dict() keeps those shapes (attributes under "$",
text under "_", repeated tags as lists) and the extract_* helpers
collapse them, so nothing past this module sees a wrapper.

CLEANUP:
-------
Before parsing, responses are stripped of a BOM, of character references
and control characters that XML 1.0 forbids (Tally emits &#4; in some
narrations), and namespace prefixes such as UDF: are flattened to UDF_
because Tally does not always declare them.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from xml.etree import ElementTree as ET

from ..exceptions import MalformedResponse, RemoteRejected
from ..models.master import Party, StockItem
from ..models.voucher import LineItem, Voucher, VoucherIdentity
from ..utils.helpers import (
    parse_quantity,
    parse_rate,
    parse_tally_amount,
    parse_tally_date,
    parse_tally_int,
)
from ..utils.logger import logger


_INVALID_HEX_REF = re.compile(r'&#x([0-8bcefBCEF]|1[0-9a-fA-F]);')
_INVALID_DEC_REF = re.compile(r'&#([0-8]|1[124-9]|2[0-9]|3[01]);')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x84\x86-\x9F]')
_TAG_PREFIX = re.compile(r'<(/?)([A-Za-z_][\w.-]*):(?=[A-Za-z_])')

VOUCHER_ENTRY_LISTS = ("ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST")
INVENTORY_LISTS = ("ALLINVENTORYENTRIES.LIST", "INVENTORYENTRIES.LIST")


# ============== Decoding & tree conversion ==============

def decode_response(content: bytes) -> str:
    """Decode a response body; Tally answers in UTF-16 or UTF-8 depending on the request"""
    if content.startswith((b'\xff\xfe', b'\xfe\xff')):
        return content.decode('utf-16')
    if len(content) > 1 and content[1:2] == b'\x00':
        return content.decode('utf-16-le', errors='replace')
    try:
        return content.decode('utf-8')
    except UnicodeDecodeError:
        return content.decode('latin-1')


def sanitize_xml(text: str) -> str:
    """Remove what XML 1.0 rejects and flatten undeclared namespace prefixes"""
    text = text.lstrip('\ufeff')
    text = _INVALID_HEX_REF.sub('', text)
    text = _INVALID_DEC_REF.sub('', text)
    text = _CONTROL_CHARS.sub('', text)
    text = re.sub(r'\sxmlns:[\w.-]+="[^"]*"', '', text)
    return _TAG_PREFIX.sub(r'<\1\2_', text)


def element_to_dict(element: ET.Element) -> Any:
    """Convert an element to plain Python data

    A leaf without attributes becomes its stripped text. Attributes go
    under "$" and text under "_". Child tags seen more than once become
    lists, in document order.
    """
    text = (element.text or "").strip()
    children = list(element)

    if not children and not element.attrib:
        return text

    result: Dict[str, Any] = {}
    if element.attrib:
        result["$"] = dict(element.attrib)
    if text:
        result["_"] = text

    for child in children:
        value = element_to_dict(child)
        if child.tag in result:
            existing = result[child.tag]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[child.tag] = [existing, value]
        else:
            result[child.tag] = value
    return result


def parse_envelope(text: str) -> Dict[str, Any]:
    """Parse a response document into {root_tag: data}"""
    if not text or not text.strip():
        raise MalformedResponse("Empty response from Tally")
    try:
        root = ET.fromstring(sanitize_xml(text).strip())
    except ET.ParseError as e:
        raise MalformedResponse(f"Could not parse Tally response: {e}") from e
    return {root.tag: element_to_dict(root)}


# ============== Scalar extraction ==============

def ensure_list(value: Any) -> List[Any]:
    """A single record comes back as an object, several as a list"""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def extract_scalar(value: Any, attribute: Optional[str] = None, default: str = "") -> str:
    """Collapse a field to a string: direct value, then "_" text, then attribute, then default"""
    if value is None:
        return default
    if isinstance(value, list):
        return extract_scalar(value[0], attribute, default) if value else default
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or default
    if isinstance(value, dict):
        text = value.get("_")
        if text is not None and str(text).strip():
            return str(text).strip()
        if attribute:
            attr = value.get("$", {}).get(attribute)
            if attr:
                return str(attr).strip()
    return default


def extract_field(record: Any, field: str, attribute: Optional[str] = None, default: str = "") -> str:
    """Read a field of a record, falling back to an attribute on the record itself

    ``attribute`` covers records such as <LEDGER NAME="Cash"> where the
    value lives on the parent element rather than in a child tag.
    """
    if not isinstance(record, dict):
        return default
    value = extract_scalar(record.get(field))
    if value:
        return value
    if attribute:
        attr = record.get("$", {}).get(attribute)
        if attr:
            return str(attr).strip()
    return default


def extract_amount(record: Any, field: str) -> float:
    return parse_tally_amount(extract_field(record, field))


def get_path(data: Any, *keys: str) -> Any:
    """Walk nested dicts, returning None as soon as a key is missing"""
    for key in keys:
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def collection_records(doc: Dict[str, Any], tag: str) -> List[Any]:
    """Records of one type from ENVELOPE/BODY/DATA/COLLECTION"""
    envelope = doc.get("ENVELOPE")
    if envelope is None:
        raise MalformedResponse(f"Response has no ENVELOPE (root was {next(iter(doc), '?')})")
    ensure_export_ok(doc)
    return ensure_list(get_path(envelope, "BODY", "DATA", "COLLECTION", tag))


def ensure_export_ok(doc: Dict[str, Any]) -> None:
    """Raise if the header carries a failure STATUS"""
    status = extract_scalar(get_path(doc, "ENVELOPE", "HEADER", "STATUS"))
    if status and status != "1":
        detail = extract_scalar(get_path(doc, "ENVELOPE", "BODY", "DATA", "LINEERROR"))
        raise RemoteRejected(detail or f"Tally returned STATUS={status}")


# ============== Vouchers ==============

def _deemed_positive(entry: Any) -> bool:
    return extract_field(entry, "ISDEEMEDPOSITIVE").lower() == "yes"


def _ledger_entries(raw: Dict[str, Any]) -> List[Any]:
    for key in VOUCHER_ENTRY_LISTS:
        entries = ensure_list(raw.get(key))
        if entries:
            return entries
    return []


def _payment_modes(entries: Iterable[Any]) -> Dict[str, float]:
    """Split the debit side of a receipt by ledger name"""
    modes = dict.fromkeys(
        ("pay_cash", "pay_qr", "pay_cheque", "pay_discount", "pay_esewa", "pay_bank_deposit"), 0.0
    )
    for entry in entries:
        if not _deemed_positive(entry):
            continue
        ledger = extract_field(entry, "LEDGERNAME").lower()
        amount = abs(extract_amount(entry, "AMOUNT"))
        if "cash teller" in ledger or ledger == "cash":
            modes["pay_cash"] += amount
        elif "qr" in ledger or "q/r" in ledger:
            modes["pay_qr"] += amount
        elif "cheque" in ledger:
            modes["pay_cheque"] += amount
        elif "discount" in ledger:
            modes["pay_discount"] += amount
        elif "esewa" in ledger or "e-sewa" in ledger:
            modes["pay_esewa"] += amount
        elif "bank deposit" in ledger:
            modes["pay_bank_deposit"] += amount
        else:
            modes["pay_cash"] += amount
    return modes


def parse_line_items(raw: Dict[str, Any]) -> List[LineItem]:
    """Inventory entries of a detailed voucher"""
    entries: List[Any] = []
    for key in INVENTORY_LISTS:
        entries = ensure_list(raw.get(key))
        if entries:
            break

    items = []
    for entry in entries:
        name = extract_field(entry, "STOCKITEMNAME")
        if not name:
            continue
        quantity, unit = parse_quantity(
            extract_field(entry, "ACTUALQTY") or extract_field(entry, "BILLEDQTY")
        )
        batch = ensure_list(entry.get("BATCHALLOCATIONS.LIST"))
        godown = extract_field(batch[0], "GODOWNNAME") if batch else ""
        items.append(LineItem(
            item_name=name,
            quantity=abs(quantity),
            unit=unit,
            rate=abs(parse_rate(extract_field(entry, "RATE"))),
            amount=abs(extract_amount(entry, "AMOUNT")),
            godown=godown or extract_field(entry, "GODOWNNAME"),
        ))
    return items


def parse_voucher(raw: Any, receipt_kinds: Iterable[str] = ()) -> Voucher:
    """Normalize one VOUCHER record; raises ValueError when it has no GUID"""
    if not isinstance(raw, dict):
        raise ValueError(f"Unexpected voucher shape: {type(raw).__name__}")

    global_id = extract_field(raw, "GUID", attribute="REMOTEID")
    if not global_id:
        raise ValueError("Voucher has no GUID")

    kind = extract_field(raw, "VOUCHERTYPENAME", attribute="VCHTYPE")
    is_receipt = kind in set(receipt_kinds)
    entries = _ledger_entries(raw)

    party_name = extract_field(raw, "PARTYLEDGERNAME") or extract_field(raw, "PARTYNAME")
    if is_receipt:
        # PARTYLEDGERNAME on receipts is usually the cash/bank ledger
        party_name = extract_field(raw, "PARTYNAME")
        if not party_name:
            credit_side = next((e for e in entries if not _deemed_positive(e)), None)
            party_name = extract_field(credit_side, "LEDGERNAME") if credit_side else ""

    voucher_date = parse_tally_date(extract_field(raw, "DATE"))
    altered = parse_tally_date(extract_field(raw, "ALTEREDDATE"))
    prior = parse_tally_date(extract_field(raw, "PRIORDATE"))
    status_date = parse_tally_date(extract_field(raw, "VCHSTATUSDATE"))

    fields: Dict[str, Any] = dict(
        global_id=global_id,
        remote_id=extract_field(raw, "MASTERID"),
        change_sequence=parse_tally_int(extract_field(raw, "ALTERID", default="0")),
        kind=kind,
        number=extract_field(raw, "VOUCHERNUMBER"),
        date=voucher_date,
        counterparty_name=party_name,
        amount=extract_amount(raw, "AMOUNT"),
        note=extract_field(raw, "NARRATION"),
        created_at=prior or voucher_date,
        last_modified_at=altered,
        entry_time=status_date or altered,
        udf_payment_total=abs(extract_amount(raw, "UDFSFLTOT")),
        line_items=parse_line_items(raw),
    )
    if is_receipt:
        fields.update(_payment_modes(entries))
    return Voucher(**fields)


def parse_vouchers(
    doc: Dict[str, Any],
    receipt_kinds: Iterable[str] = (),
    kinds: Optional[Iterable[str]] = None,
) -> Tuple[List[Voucher], int]:
    """Normalize every voucher in a collection export

    Returns (vouchers, skipped). A record that fails to normalize is
    logged and counted rather than failing the whole response.
    """
    receipt_kinds = list(receipt_kinds)
    wanted = set(kinds) if kinds else None
    vouchers: List[Voucher] = []
    skipped = 0

    for raw in collection_records(doc, "VOUCHER"):
        try:
            voucher = parse_voucher(raw, receipt_kinds)
        except ValueError as e:
            skipped += 1
            logger.warning(f"Skipping voucher record: {e}")
            continue
        if wanted is None or voucher.kind in wanted:
            vouchers.append(voucher)
    return vouchers, skipped


def parse_identities(doc: Dict[str, Any]) -> Tuple[List[VoucherIdentity], int]:
    identities: List[VoucherIdentity] = []
    skipped = 0
    for raw in collection_records(doc, "VOUCHER"):
        global_id = extract_field(raw, "GUID", attribute="REMOTEID")
        if not global_id:
            skipped += 1
            continue
        identities.append(VoucherIdentity(
            global_id=global_id,
            remote_id=extract_field(raw, "MASTERID"),
            kind=extract_field(raw, "VOUCHERTYPENAME", attribute="VCHTYPE"),
            number=extract_field(raw, "VOUCHERNUMBER"),
        ))
    return identities, skipped


def find_detail_voucher(doc: Dict[str, Any]) -> Optional[Any]:
    """The raw voucher of an Object export or a single-record collection"""
    envelope = doc.get("ENVELOPE")
    if envelope is None:
        raise MalformedResponse("Response has no ENVELOPE")
    data = get_path(envelope, "BODY", "DATA")
    for path in (("TALLYMESSAGE", "VOUCHER"), ("COLLECTION", "VOUCHER")):
        records = ensure_list(get_path(data, *path))
        if records:
            return records[0]
    return None


# ============== Companies & masters ==============

def parse_companies(doc: Dict[str, Any]) -> List[str]:
    companies = []
    for raw in collection_records(doc, "COMPANY"):
        if isinstance(raw, str):
            name = raw.strip()
        else:
            name = extract_field(raw, "NAME", attribute="NAME")
        if name:
            companies.append(name)
    return companies


def parse_stock_items(doc: Dict[str, Any]) -> Tuple[List[StockItem], int]:
    items: List[StockItem] = []
    skipped = 0
    for raw in collection_records(doc, "STOCKITEM"):
        name = extract_field(raw, "NAME", attribute="NAME") or extract_scalar(raw)
        if not name:
            skipped += 1
            continue
        items.append(StockItem(
            name=name,
            parent=extract_field(raw, "PARENT"),
            base_units=extract_field(raw, "BASEUNITS"),
            opening_balance=extract_amount(raw, "OPENINGBALANCE"),
            closing_balance=extract_amount(raw, "CLOSINGBALANCE"),
            closing_value=extract_amount(raw, "CLOSINGVALUE"),
            closing_rate=parse_rate(extract_field(raw, "CLOSINGRATE")),
            hsn_code=extract_field(raw, "HSNCODE"),
            gst_rate=extract_amount(raw, "GSTRATE"),
            standard_cost=parse_rate(extract_field(raw, "STANDARDCOST")),
            selling_price=parse_rate(extract_field(raw, "STANDARDPRICE")),
            change_sequence=parse_tally_int(extract_field(raw, "ALTERID", default="0")),
        ))
    return items, skipped


def parse_parties(doc: Dict[str, Any], group_type: str) -> Tuple[List[Party], int]:
    parties: List[Party] = []
    skipped = 0
    for raw in collection_records(doc, "LEDGER"):
        name = extract_field(raw, "NAME", attribute="NAME") or extract_scalar(raw)
        if not name:
            skipped += 1
            continue
        parties.append(Party(
            name=name,
            parent=extract_field(raw, "PARENT"),
            group_type=group_type,
            balance=extract_amount(raw, "CLOSINGBALANCE"),
            address=extract_field(raw, "ADDRESS"),
            state=extract_field(raw, "STATENAME"),
            gstin=extract_field(raw, "GSTIN") or extract_field(raw, "PARTYGSTIN"),
            change_sequence=parse_tally_int(extract_field(raw, "ALTERID", default="0")),
        ))
    return parties, skipped


# ============== Import responses ==============

def _counter(block: Any, name: str) -> int:
    return parse_tally_int(extract_field(block, name, default="0"))


def resolve_import_response(doc: Dict[str, Any]) -> Tuple[Optional[str], int]:
    """Decide whether an Import request actually changed anything

    Checked in order: explicit created/altered/deleted counters, then a
    last-written voucher id, then line errors, then error counters.
    STATUS=1 on its own is not success: Tally accepts requests it then
    ignores. Returns (remote_id, changed_count) or raises RemoteRejected /
    MalformedResponse.
    """
    direct = doc.get("RESPONSE")
    envelope = doc.get("ENVELOPE")
    if direct is None and envelope is None:
        raise MalformedResponse(f"Unknown import response root: {next(iter(doc), '?')}")

    import_result = direct if direct is not None else get_path(envelope, "BODY", "DATA", "IMPORTRESULT")
    last_id = (
        extract_field(direct, "LASTVCHID")
        or extract_scalar(get_path(envelope, "BODY", "DESC", "CMPINFO", "IDINFO", "LASTVCHID"))
        or extract_scalar(get_path(envelope, "BODY", "DESC", "CMPINFOEX", "IDINFO", "LASTCREATEDVCHID"))
    )
    remote_id = last_id if parse_tally_int(last_id) > 0 else None

    if isinstance(import_result, dict):
        changed = sum(_counter(import_result, name) for name in ("CREATED", "ALTERED", "DELETED", "CANCELLED"))
        if changed > 0:
            return remote_id, changed

    if remote_id:
        return remote_id, 1

    line_error = (
        extract_field(import_result, "LINEERROR")
        or extract_scalar(get_path(envelope, "BODY", "DATA", "LINEERROR"))
    )
    if line_error:
        raise RemoteRejected(line_error)

    if isinstance(import_result, dict):
        errors = _counter(import_result, "ERRORS")
        exceptions = _counter(import_result, "EXCEPTIONS")
        if errors or exceptions:
            raise RemoteRejected(f"Import failed: {errors} error(s), {exceptions} exception(s)")

    error_msg = (
        extract_scalar(get_path(envelope, "BODY", "DATA", "ERRORMSG"))
        or extract_scalar(get_path(envelope, "ERRORMSG"))
        or extract_scalar(get_path(envelope, "BODY", "DESC", "CMPINFO", "ERRORMSG"))
    )
    if error_msg:
        raise RemoteRejected(error_msg)

    status = extract_scalar(get_path(envelope, "HEADER", "STATUS"))
    if isinstance(import_result, dict) or status == "1":
        raise RemoteRejected("No records were created or altered")

    raise MalformedResponse("Unknown import response format from Tally")
