"""
XML Builder Module
Generates the TDL request envelopes sent to Tally

Exports declare an inline COLLECTION with FETCH fields and named
formula FILTERs; imports wrap a VOUCHER element carrying an ACTION.
"""

from datetime import date
from html import escape as html_escape
from typing import Dict, Iterable, List, Optional

from ..models.voucher import LineItem, VoucherAlteration, VoucherDraft
from ..utils.helpers import format_amount, to_tally_date


VOUCHER_FETCH = [
    "DATE", "VOUCHERTYPENAME", "VOUCHERNUMBER", "PARTYLEDGERNAME", "PARTYNAME",
    "AMOUNT", "NARRATION", "GUID", "MASTERID", "ALTERID", "ALTEREDDATE",
    "PRIORDATE", "VCHSTATUSDATE", "ALLLEDGERENTRIES.LIST",
]
VOUCHER_COMPUTE = [
    "UDFSFLTOT: $$AsAmount:$$String:$VCHNarr_AIARSM_SFLTot",
]
IDENTITY_FETCH = ["GUID", "MASTERID", "VOUCHERTYPENAME", "VOUCHERNUMBER"]
DETAIL_FETCH = VOUCHER_FETCH + [
    "ALLINVENTORYENTRIES.LIST.STOCKITEMNAME", "ALLINVENTORYENTRIES.LIST.ACTUALQTY",
    "ALLINVENTORYENTRIES.LIST.BILLEDQTY", "ALLINVENTORYENTRIES.LIST.RATE",
    "ALLINVENTORYENTRIES.LIST.AMOUNT", "ALLINVENTORYENTRIES.LIST.BATCHALLOCATIONS.LIST.GODOWNNAME",
]
STOCK_ITEM_FETCH = [
    "NAME", "PARENT", "BASEUNITS", "OPENINGBALANCE", "CLOSINGBALANCE", "CLOSINGVALUE",
    "CLOSINGRATE", "HSNCODE", "GSTRATE", "ALTERID", "STANDARDCOST", "STANDARDPRICE",
]
PARTY_FETCH = ["NAME", "PARENT", "CLOSINGBALANCE", "ADDRESS", "STATENAME", "GSTIN", "ALTERID"]

NOT_CANCELLED = "$$IsEqual:$IsCancelled:No"
NOT_OPTIONAL = "$$IsEqual:$IsOptional:No"


def kind_formula(kinds: Iterable[str]) -> Optional[str]:
    """$VoucherTypeName = "A" OR $VoucherTypeName = "B"

    TDL string literals cannot carry a double quote, so a kind containing
    one yields None and the caller relies on filtering the parsed records.
    """
    kinds = list(kinds)
    if not kinds or any('"' in kind for kind in kinds):
        return None
    return " OR ".join(f'$VOUCHERTYPENAME = "{kind}"' for kind in kinds)


class XMLBuilder:
    """Builds TDL XML requests for one company"""

    def __init__(self, company: str = ""):
        self.company = company

    # ============== Envelope pieces ==============

    def _static_variables(self, extra: Optional[Dict[str, str]] = None, export: bool = True) -> str:
        retval = "<STATICVARIABLES>"
        if export:
            retval += "<SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT>"
        if self.company:
            retval += f"<SVCURRENTCOMPANY>{html_escape(self.company)}</SVCURRENTCOMPANY>"
        for name, value in (extra or {}).items():
            retval += f"<{name}>{html_escape(str(value))}</{name}>"
        return retval + "</STATICVARIABLES>"

    def _header(self, request: str, type_: str, id_: str) -> str:
        return (
            f"<HEADER><VERSION>1</VERSION><TALLYREQUEST>{request}</TALLYREQUEST>"
            f"<TYPE>{type_}</TYPE><ID>{id_}</ID></HEADER>"
        )

    def collection_export(
        self,
        name: str,
        object_type: str,
        fetch: List[str],
        filters: Optional[Dict[str, str]] = None,
        computes: Optional[List[str]] = None,
        static_variables: Optional[Dict[str, str]] = None,
        child_of: str = "",
    ) -> str:
        """Export request for an inline TDL collection

        ``filters`` maps formula names to TDL formula expressions; every
        formula must hold for a record to be returned.
        """
        filters = filters or {}
        retval = "<ENVELOPE>" + self._header("Export", "Collection", name)
        retval += "<BODY><DESC>" + self._static_variables(static_variables)
        retval += f'<TDL><TDLMESSAGE><COLLECTION NAME="{name}" ISMODIFY="No">'
        retval += f"<TYPE>{object_type}</TYPE>"
        if child_of:
            retval += f"<BELONGSTO>Yes</BELONGSTO><CHILDOF>{html_escape(child_of)}</CHILDOF>"
        retval += f"<FETCH>{','.join(fetch)}</FETCH>"
        for compute in computes or []:
            retval += f"<COMPUTE>{compute}</COMPUTE>"
        if filters:
            retval += f"<FILTER>{','.join(filters)}</FILTER>"
        retval += "</COLLECTION>"
        for formula_name, formula in filters.items():
            retval += f'<SYSTEM TYPE="Formulae" NAME="{formula_name}">{html_escape(formula, quote=False)}</SYSTEM>'
        retval += "</TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>"
        return retval

    # ============== Exports ==============

    def company_list(self) -> str:
        retval = "<ENVELOPE>" + self._header("Export", "Collection", "CompanyList")
        retval += "<BODY><DESC><STATICVARIABLES><SVEXPORTFORMAT>$$SysName:XML</SVEXPORTFORMAT></STATICVARIABLES>"
        retval += '<TDL><TDLMESSAGE><COLLECTION NAME="CompanyList"><TYPE>Company</TYPE><FETCH>NAME</FETCH></COLLECTION>'
        retval += "</TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>"
        return retval

    def vouchers_since(self, cursor: int, kinds: Optional[List[str]] = None) -> str:
        filters = {
            "IncrFilter": f"$ALTERID > {int(cursor)}",
            "NotCancelled": NOT_CANCELLED,
            "NotOptional": NOT_OPTIONAL,
        }
        kind_filter = kind_formula(kinds or [])
        if kind_filter:
            filters["KindFilter"] = kind_filter
        return self.collection_export("VchIncr", "Voucher", VOUCHER_FETCH, filters, VOUCHER_COMPUTE)

    def vouchers_in_range(self, from_date: date, to_date: date, kinds: Optional[List[str]] = None) -> str:
        filters = {"NotCancelled": NOT_CANCELLED, "NotOptional": NOT_OPTIONAL}
        kind_filter = kind_formula(kinds or [])
        if kind_filter:
            filters["KindFilter"] = kind_filter
        return self.collection_export(
            "VchRange", "Voucher", VOUCHER_FETCH, filters, VOUCHER_COMPUTE,
            static_variables={"SVFROMDATE": to_tally_date(from_date), "SVTODATE": to_tally_date(to_date)},
        )

    def voucher_identities(self, kinds: Optional[List[str]] = None) -> str:
        filters = {"NotCancelled": NOT_CANCELLED}
        kind_filter = kind_formula(kinds or [])
        if kind_filter:
            filters["KindFilter"] = kind_filter
        return self.collection_export("VoucherGuids", "Voucher", IDENTITY_FETCH, filters)

    def voucher_object(self, remote_id: str) -> str:
        retval = "<ENVELOPE>" + self._header("Export", "Object", "Vouchers")
        retval += "<BODY><DESC>" + self._static_variables({"MASTERID": remote_id})
        retval += "</DESC></BODY></ENVELOPE>"
        return retval

    def voucher_by_master_id(self, remote_id: str) -> str:
        return self.collection_export(
            "CompleteVoucher", "Voucher", DETAIL_FETCH, {"MatchMasterId": f"$MASTERID = {remote_id}"}
        )

    def stock_items_since(self, cursor: int) -> str:
        return self.collection_export(
            "StockIncr", "Stock Item", STOCK_ITEM_FETCH, {"IncrFilter": f"$ALTERID > {int(cursor)}"}
        )

    def parties_since(self, cursor: int, group: str) -> str:
        return self.collection_export(
            "PartyIncr", "Ledger", PARTY_FETCH, {"IncrFilter": f"$ALTERID > {int(cursor)}"}, child_of=group
        )

    # ============== Imports ==============

    def _import(self, voucher_xml: str) -> str:
        retval = "<ENVELOPE>" + self._header("Import", "Data", "Vouchers")
        retval += "<BODY><DESC>" + self._static_variables(export=False) + "</DESC>"
        retval += f"<DATA><TALLYMESSAGE>{voucher_xml}</TALLYMESSAGE></DATA></BODY></ENVELOPE>"
        return retval

    def _inventory_entries(self, items: List[LineItem], sales_ledger: str, default_godown: str) -> str:
        retval = ""
        for item in items:
            quantity = abs(item.quantity or 1)
            rate = abs(item.rate)
            amount = abs(item.amount or quantity * rate)
            unit = html_escape(item.unit or "Nos")
            qty = f" {format_amount(quantity)} {unit}"
            godown = html_escape(item.godown or default_godown)
            retval += (
                "<ALLINVENTORYENTRIES.LIST>"
                f"<STOCKITEMNAME>{html_escape(item.item_name)}</STOCKITEMNAME>"
                "<ISDEEMEDPOSITIVE>No</ISDEEMEDPOSITIVE>"
                f"<RATE>{format_amount(rate)}/{unit}</RATE>"
                f"<AMOUNT>{format_amount(amount)}</AMOUNT>"
                f"<ACTUALQTY>{qty}</ACTUALQTY><BILLEDQTY>{qty}</BILLEDQTY>"
                f"<BATCHALLOCATIONS.LIST><GODOWNNAME>{godown}</GODOWNNAME>"
                f"<AMOUNT>{format_amount(amount)}</AMOUNT>"
                f"<ACTUALQTY>{qty}</ACTUALQTY><BILLEDQTY>{qty}</BILLEDQTY></BATCHALLOCATIONS.LIST>"
                f"<ACCOUNTINGALLOCATIONS.LIST><LEDGERNAME>{html_escape(sales_ledger)}</LEDGERNAME>"
                f"<ISDEEMEDPOSITIVE>No</ISDEEMEDPOSITIVE><AMOUNT>{format_amount(amount)}</AMOUNT>"
                "</ACCOUNTINGALLOCATIONS.LIST>"
                "</ALLINVENTORYENTRIES.LIST>"
            )
        return retval

    def _party_entry(self, party: str, total: float) -> str:
        return (
            f"<LEDGERENTRIES.LIST><LEDGERNAME>{party}</LEDGERNAME>"
            f"<ISDEEMEDPOSITIVE>Yes</ISDEEMEDPOSITIVE><AMOUNT>-{format_amount(total)}</AMOUNT>"
            "</LEDGERENTRIES.LIST>"
        )

    def create_voucher(self, draft: VoucherDraft) -> str:
        kind = html_escape(draft.kind)
        party = html_escape(draft.counterparty_name)
        voucher_date = to_tally_date(draft.date or date.today())
        retval = f'<VOUCHER VCHTYPE="{kind}" ACTION="Create">'
        retval += f"<DATE>{voucher_date}</DATE><VOUCHERTYPENAME>{kind}</VOUCHERTYPENAME>"
        retval += f"<NARRATION>{html_escape(draft.note)}</NARRATION>"
        retval += f"<PARTYLEDGERNAME>{party}</PARTYLEDGERNAME><PARTYNAME>{party}</PARTYNAME>"
        retval += "<ISINVOICE>Yes</ISINVOICE><PERSISTEDVIEW>Invoice Voucher View</PERSISTEDVIEW>"
        retval += self._party_entry(party, draft.total)
        retval += self._inventory_entries(draft.items, draft.sales_ledger, draft.godown)
        retval += "</VOUCHER>"
        return self._import(retval)

    def alter_voucher(self, alteration: VoucherAlteration) -> str:
        kind = html_escape(alteration.kind)
        party = html_escape(alteration.counterparty_name)
        total = sum(item.amount or abs(item.quantity) * abs(item.rate) for item in alteration.items)
        remote_ref = html_escape(alteration.global_id or alteration.remote_id)
        retval = f'<VOUCHER REMOTEID="{remote_ref}" VCHTYPE="{kind}" ACTION="Alter" OBJVIEW="Invoice Voucher View">'
        retval += f"<MASTERID>{html_escape(alteration.remote_id)}</MASTERID>"
        if alteration.number:
            retval += f"<VOUCHERNUMBER>{html_escape(alteration.number)}</VOUCHERNUMBER>"
        retval += f"<DATE>{to_tally_date(alteration.date)}</DATE><VOUCHERTYPENAME>{kind}</VOUCHERTYPENAME>"
        retval += f"<PARTYLEDGERNAME>{party}</PARTYLEDGERNAME>"
        retval += "<PERSISTEDVIEW>Invoice Voucher View</PERSISTEDVIEW>"
        retval += self._party_entry(party, total)
        retval += self._inventory_entries(alteration.items, alteration.sales_ledger, "Main Location")
        retval += "</VOUCHER>"
        return self._import(retval)

    def delete_voucher(self, remote_id: str, kind: str) -> str:
        return self._import(
            f'<VOUCHER REMOTEID="{html_escape(remote_id)}" VCHTYPE="{html_escape(kind)}" ACTION="Delete"></VOUCHER>'
        )
