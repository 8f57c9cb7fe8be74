"""
Field mapping between ERP rows and warehouse payloads.

Pure functions: Record in, JSON-ready dict out. Numbers leave as int/float
(not Decimal) so the payload can go straight into httpx's json=.

Validators return a list of human-readable problems; an empty list means
the payload may be sent.
"""
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from erpwms.sync.record import Record

# Flag values: SQL rows use Y/N, OData rows tYES/tNO
_YES = {"Y", "TYES"}

BARCODE_LENGTHS = {"EAN13": 13, "UPCA": 12, "ITF14": 14}
CODE128_MAX_LENGTH = 48

GOODS_RECEIPT_BASE_TYPE = 22  # purchase order
DELIVERY_BASE_TYPE = 17  # sales order


class MappingError(ValueError):
    """Raised when a row cannot be turned into a payload at all."""


def _flag(record: Record, key: str, default: str = "N") -> bool:
    return record.as_str(key, default).upper() in _YES


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _first_positive(record: Record, *keys: str) -> float:
    for key in keys:
        value = record.as_float(key)
        if value > 0:
            return value
    return 0.0


# ─── Products ─────────────────────────────────────────────────────────────────

def _compact_barcode(barcode: str) -> str:
    return barcode.replace(" ", "").replace("-", "")


def detect_barcode_type(barcode: str) -> str:
    """EAN13 / UPCA / ITF14 by digit count, else Code128."""
    compact = _compact_barcode(barcode or "")
    if compact.isdigit():
        for barcode_type, length in BARCODE_LENGTHS.items():
            if len(compact) == length:
                return barcode_type
    return "Code128"


def is_valid_barcode(barcode: str, barcode_type: str) -> bool:
    compact = _compact_barcode(barcode)
    if barcode_type in BARCODE_LENGTHS:
        return compact.isdigit() and len(compact) == BARCODE_LENGTHS[barcode_type]
    if barcode_type == "Code128":
        return 0 < len(compact) <= CODE128_MAX_LENGTH
    return True


def build_packsizes(record: Record) -> List[Dict[str, Any]]:
    """Case pack derived from the sales packaging unit, if larger than one."""
    sales_pack = record.as_float("SalPackUn", 1.0)
    if sales_pack <= 1:
        return []
    return [{
        "name": "Case",
        "eachCount": sales_pack,
        "barcodeValue": "",
        "barcodeType": "Code128",
        "height": _first_positive(record, "SHeight2", "BHeight2"),
        "width": _first_positive(record, "SWidth2", "BWidth2"),
        "length": _first_positive(record, "SLength2", "BLength2"),
        "weight": _first_positive(record, "SWeight2", "BWeight2"),
        "palletTie": 8,
        "palletHeight": 4,
    }]


def map_product(
    record: Record,
    *,
    client_id: Optional[str],
    item_groups: Mapping[int, str],
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Map an Items row (SQL column names) to a warehouse product."""
    if not client_id:
        raise MappingError("Warehouse client id is missing")
    item_code = record.as_str("ItemCode")
    barcode = record.as_str("CodeBars")

    product: Dict[str, Any] = {
        "sku": item_code,
        "description": record.as_str("ItemName"),
        "clientId": client_id,
        "referenceNumber": item_code,
    }
    if barcode:
        product.update(upc=barcode, barcodeValue=barcode, barcodeType=detect_barcode_type(barcode))
    else:
        product.update(upc=item_code, barcodeValue=item_code, barcodeType="Code128")

    if _flag(record, "ManBtchNum"):
        product["isLotControlled"] = True
    if _flag(record, "ManSerNum"):
        product["isSerialControlled"] = True
    if record.as_str("ItemType") == "P":
        product["isBillOfMaterial"] = True
    if _flag(record, "QryGroup1"):
        product["isDecimalControlled"] = True

    if record.as_int("UgpEntry") > 0:
        product["isPacksizeControlled"] = True
        packsizes = build_packsizes(record)
        if packsizes:
            product["packsizes"] = packsizes

    for field, sales_key, purchase_key in (
        ("height", "SHeight1", "BHeight1"),
        ("width", "SWidth1", "BWidth1"),
        ("length", "SLength1", "BLength1"),
        ("weight", "SWeight1", "BWeight1"),
    ):
        value = _first_positive(record, sales_key, purchase_key)
        if value > 0:
            product[field] = value

    for field in ("palletTie", "palletHeight"):
        value = record.as_int(field[0].upper() + field[1:])
        if value > 0:
            product[field] = value

    group_code = record.as_int("ItmsGrpCod", -1)
    if group_code >= 0:
        product["category"] = item_groups.get(group_code) or str(group_code)

    foreign_name = record.as_str("FrgnName")
    if foreign_name:
        product["commodityDescription"] = foreign_name
    user_text = record.as_str("UserText")
    if user_text:
        product["nmfc"] = user_text
    if image_url:
        product["imageUrl"] = image_url
    return product


def validate_product(product: Mapping[str, Any]) -> List[str]:
    errors = []
    if not product.get("sku"):
        errors.append("SKU is required")
    if not product.get("description"):
        errors.append("Description is required")
    barcode = product.get("barcodeValue") or ""
    barcode_type = product.get("barcodeType") or ""
    if barcode and barcode_type and not is_valid_barcode(barcode, barcode_type):
        errors.append(f"Invalid barcode format for type {barcode_type}")
    if product.get("isPacksizeControlled") and not product.get("packsizes"):
        errors.append("Pack sizes are required when pack size controlled")
    return errors


# ─── Business partners ────────────────────────────────────────────────────────

def _business_partner(record: Record, company_name: str, client_name: str) -> Dict[str, Any]:
    return {
        "CardCode": record.as_str("CardCode"),
        "CardName": record.as_str("CardName"),
        "TaxId": record.as_str("LicTradNum"),
        "Phone1": record.as_str("Phone1"),
        "Phone2": record.as_str("Phone2"),
        "Mobile": record.as_str("Cellular"),
        "Email": record.as_str("E_Mail"),
        "Address": record.as_str("Address"),
        "City": record.as_str("City"),
        "State": record.as_str("State"),
        "ZipCode": record.as_str("ZipCode"),
        "Country": record.as_str("Country"),
        "IsActive": record.as_str("ValidFor", "Y").upper() in _YES,
        "IsFrozen": _flag(record, "Frozen"),
        "CompanyName": company_name,
        "ClientName": client_name,
    }


def map_customer(record: Record, *, company_name: str, client_name: str) -> Dict[str, Any]:
    customer = _business_partner(record, company_name, client_name)
    customer.update(
        County=record.as_str("County"),
        CreditLimit=record.as_float("CreditLine"),
        Balance=record.as_float("Balance"),
        OrdersBalance=record.as_float("OrdersBal"),
    )
    return customer


def map_vendor(record: Record, *, company_name: str, client_name: str) -> Dict[str, Any]:
    return _business_partner(record, company_name, client_name)


def validate_business_partner(partner: Mapping[str, Any]) -> List[str]:
    errors = []
    if not partner.get("CardCode"):
        errors.append("CardCode is required")
    if not partner.get("CardName"):
        errors.append("CardName is required")
    return errors


# ─── Orders ───────────────────────────────────────────────────────────────────

def map_document_line(line: Record) -> Dict[str, Any]:
    return {
        "LineNum": line.as_int("LineNum"),
        "ItemCode": line.as_str("ItemCode"),
        "Description": line.as_str("Dscription"),
        "Quantity": line.as_float("Quantity"),
        "Price": line.as_float("Price"),
        "LineTotal": line.as_float("LineTotal"),
        "WarehouseCode": line.as_str("WhsCode"),
        "ShipDate": _iso(line.as_datetime("ShipDate")),
        "OpenQuantity": line.as_float("OpenQty"),
    }


def _document_header(header: Record, lines: Sequence[Record]) -> Dict[str, Any]:
    return {
        "DocEntry": header.as_int("DocEntry"),
        "DocNum": header.as_int("DocNum"),
        "DocDate": _iso(header.as_datetime("DocDate")),
        "DocDueDate": _iso(header.as_datetime("DocDueDate")),
        "CardCode": header.as_str("CardCode"),
        "CardName": header.as_str("CardName"),
        "DocTotal": header.as_float("DocTotal"),
        "Comments": header.as_str("Comments"),
        "Lines": [map_document_line(line) for line in lines],
    }


def map_purchase_order(
    header: Record, lines: Sequence[Record], *, company_name: str, client_name: str
) -> Dict[str, Any]:
    order = _document_header(header, lines)
    order.update(
        DocCurrency=header.as_str("DocCur"),
        DocRate=header.as_float("DocRate", 1.0),
        CompanyName=company_name,
        ClientName=client_name,
    )
    return order


def map_pick_ticket(
    header: Record, lines: Sequence[Record], *, company_name: str, client_name: str
) -> Dict[str, Any]:
    ticket = _document_header(header, lines)
    ticket.update(
        ShipToCode=header.as_str("ShipToCode"),
        ShipToAddress=header.as_str("Address"),
        CompanyName=company_name,
        ClientName=client_name,
        Priority="Normal",
        PickTicketType="SalesOrder",
    )
    return ticket


def validate_document(document: Mapping[str, Any]) -> List[str]:
    errors = []
    if not document.get("DocEntry"):
        errors.append("DocEntry is required")
    if not document.get("CardCode"):
        errors.append("CardCode is required")
    lines = document.get("Lines") or []
    if not lines:
        errors.append("At least one line is required")
    for line in lines:
        if not line.get("ItemCode"):
            errors.append(f"Line {line.get('LineNum')} has no ItemCode")
    return errors


# ─── Upload flows (warehouse → ERP) ───────────────────────────────────────────

def _upload_lines(
    item: Record, base_type: int, entry_key: str, line_key: str, default_warehouse_code: str
) -> List[Dict[str, Any]]:
    raw_lines = item.get("Lines") or []
    if not isinstance(raw_lines, list):
        raise MappingError("Lines must be a list")
    mapped = []
    for raw in raw_lines:
        line = Record(raw)
        mapped.append({
            "ItemCode": line.as_str("ItemCode"),
            "Quantity": line.as_float("Quantity"),
            "Price": line.as_float("Price"),
            "WarehouseCode": line.as_str("WarehouseCode") or default_warehouse_code,
            "BaseType": base_type,
            "BaseEntry": line.as_int(entry_key),
            "BaseLine": line.as_int(line_key),
        })
    if not mapped:
        raise MappingError("Document has no lines")
    return mapped


def _doc_date(item: Record, key: str, now: datetime) -> str:
    return (item.as_datetime(key) or now).strftime("%Y-%m-%d")


def map_goods_receipt(
    receipt: Record, *, default_warehouse_code: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Warehouse receipt → ERP Goods Receipt PO (lines based on PO lines)."""
    now = now or datetime.utcnow()
    return {
        "CardCode": receipt.as_str("VendorCode"),
        "DocDate": _doc_date(receipt, "ReceiptDate", now),
        "Comments": f"P4W Receipt: {receipt.as_str('ReceiptId')}",
        "DocumentLines": _upload_lines(
            receipt, GOODS_RECEIPT_BASE_TYPE, "PODocEntry", "POLineNum", default_warehouse_code
        ),
    }


def map_delivery_note(
    delivery: Record, *, default_warehouse_code: str, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Warehouse delivery → ERP Delivery Note (lines based on sales order lines)."""
    now = now or datetime.utcnow()
    return {
        "CardCode": delivery.as_str("CustomerCode"),
        "DocDate": _doc_date(delivery, "DeliveryDate", now),
        "Comments": (
            f"P4W Delivery: {delivery.as_str('DeliveryId')}, "
            f"Pick Ticket: {delivery.as_str('PickTicketId')}"
        ),
        "DocumentLines": _upload_lines(
            delivery, DELIVERY_BASE_TYPE, "SODocEntry", "SOLineNum", default_warehouse_code
        ),
    }
