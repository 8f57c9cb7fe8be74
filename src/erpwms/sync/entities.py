"""
Entity definitions: the per-type queries, keys, mappers and writers that
parameterize the generic SyncJob.

  Product        OData Items            → products       (upsert by Sku)
  Customer       SQL OCRD CardType='C'  → customers/batch
  Vendor         SQL OCRD CardType='S'  → vendors        (upsert by CardCode)
  PurchaseOrder  SQL OPOR + POR1 lines  → purchase-orders (upsert by DocEntry)
  SalesOrder     SQL ORDR + RDR1 lines  → pick-tickets   (upsert by DocEntry)
"""
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from erpwms.models.sync import (
    CustomerSyncStatus,
    ProductSyncStatus,
    PurchaseOrderSyncStatus,
    SalesOrderSyncStatus,
    VendorSyncStatus,
)
from erpwms.sync import mappers
from erpwms.sync.images import NullAssetSync
from erpwms.sync.job import EntityDefinition, MapContext
from erpwms.sync.record import Record
from erpwms.sync.sources import ODataSource, SqlQuerySource
from erpwms.sync.writers import CustomerBatchWriter, UpsertWriter

logger = logging.getLogger(__name__)

# Items entity set fields, renamed to their OITM column names so the
# product mapper reads the same keys whichever endpoint produced the row
ITEM_FIELD_MAP: Dict[str, str] = {
    "ItemCode": "ItemCode",
    "ItemName": "ItemName",
    "ItemType": "ItemType",
    "InventoryItem": "InvntItem",
    "ForeignName": "FrgnName",
    "BarCode": "CodeBars",
    "Valid": "ValidFor",
    "Frozen": "FrozenFor",
    "SalesItem": "SellItem",
    "PurchaseItem": "PrchseItem",
    "ManageBatchNumbers": "ManBtchNum",
    "ManageSerialNumbers": "ManSerNum",
    "SalesUnit": "SalUnitMsr",
    "PurchaseUnit": "BuyUnitMsr",
    "InventoryUOM": "InvntryUom",
    "PurchasePackagingUnit": "PurPackUn",
    "SalesPackagingUnit": "SalPackUn",
    "UoMGroupEntry": "UgpEntry",
    "SalesUnitHeight": "SHeight1",
    "SalesUnitWidth": "SWidth1",
    "SalesUnitLength": "SLength1",
    "SalesUnitWeight": "SWeight1",
    "PurchaseUnitHeight": "BHeight1",
    "PurchaseUnitWidth": "BWidth1",
    "PurchaseUnitLength": "BLength1",
    "PurchaseUnitWeight": "BWeight1",
    "ItemsGroupCode": "ItmsGrpCod",
    "User_Text": "UserText",
    "Picture": "PicturName",
    "AttachmentEntry": "AttachEntry",
    "UpdateDate": "UpdateDate",
    "CreateDate": "CreateDate",
}

CUSTOMER_QUERY = """
    SELECT CardCode, CardName, CardType, LicTradNum, Phone1, Phone2, Cellular,
           E_Mail, Address, City, County, State1 AS State, ZipCode, Country,
           CreditLine, Balance, OrdersBal, ValidFor, frozenFor AS Frozen,
           UpdateDate, CreateDate
    FROM OCRD
    WHERE CardType = 'C'
"""

VENDOR_QUERY = """
    SELECT CardCode, CardName, CardType, LicTradNum, Phone1, Phone2, Cellular,
           E_Mail, Address, City, State1 AS State, ZipCode, Country,
           ValidFor, frozenFor AS Frozen, UpdateDate, CreateDate
    FROM OCRD
    WHERE CardType = 'S'
"""

PURCHASE_ORDER_QUERY = """
    SELECT DocEntry, DocNum, DocDate, DocDueDate, CardCode, CardName, DocTotal,
           DocStatus, Comments, DocCur, DocRate, UpdateDate, CreateDate
    FROM OPOR
    WHERE DocStatus = 'O'
"""

SALES_ORDER_QUERY = """
    SELECT DocEntry, DocNum, DocDate, DocDueDate, CardCode, CardName, DocTotal,
           DocStatus, Comments, ShipToCode, Address, UpdateDate, CreateDate
    FROM ORDR
    WHERE DocStatus = 'O'
"""

LINES_QUERY = """
    SELECT DocEntry, LineNum, ItemCode, Dscription, Quantity, Price, LineTotal,
           WhsCode, ShipDate, OpenQty
    FROM {table}
    WHERE DocEntry = {doc_entry}
    ORDER BY LineNum
"""


def text_key(field: str) -> Callable[[Record], str]:
    return lambda record: record.as_str(field)


def int_key(field: str) -> Callable[[Record], str]:
    """Numeric keys: zero or missing means no key."""

    def key(record: Record) -> str:
        value = record.as_int(field)
        return str(value) if value > 0 else ""

    return key


def _doc_num(record: Record) -> Optional[int]:
    return record.as_int("DocNum") or None


def _line_loader(erp, table: str):
    async def load(header: Record) -> List[Record]:
        query = LINES_QUERY.format(table=table, doc_entry=header.as_int("DocEntry")).strip()
        return [Record(row) for row in await erp.execute_sql(query)]

    return load


# ─── Definitions ──────────────────────────────────────────────────────────────

def product_definition(erp, wms, *, assets=None) -> EntityDefinition:
    async def prepare(context: MapContext) -> MapContext:
        client_id = await wms.get_client_id()
        if not client_id:
            raise RuntimeError("Warehouse client id is unavailable; products cannot be mapped")
        item_groups = await erp.get_item_groups()
        logger.info("Loaded %d item groups", len(item_groups))
        return replace(context, client_id=client_id, item_groups=item_groups)

    return EntityDefinition(
        entity_type="Product",
        status_table=ProductSyncStatus,
        source=ODataSource(erp, "Items", list(ITEM_FIELD_MAP), "ItemCode", field_map=ITEM_FIELD_MAP),
        key=text_key("ItemCode"),
        mapper=lambda record, lines, ctx: mappers.map_product(
            record, client_id=ctx.client_id, item_groups=ctx.item_groups, image_url=ctx.image_url
        ),
        validator=mappers.validate_product,
        writer=UpsertWriter(wms, "products", "Sku", payload_key="sku"),
        assets=assets or NullAssetSync(),
        prepare=prepare,
    )


def customer_definition(erp, wms) -> EntityDefinition:
    return EntityDefinition(
        entity_type="Customer",
        status_table=CustomerSyncStatus,
        source=SqlQuerySource(erp, CUSTOMER_QUERY, "CardCode"),
        key=text_key("CardCode"),
        mapper=lambda record, lines, ctx: mappers.map_customer(
            record, company_name=ctx.scope, client_name=ctx.client_name
        ),
        validator=mappers.validate_business_partner,
        writer=CustomerBatchWriter(wms),
    )


def vendor_definition(erp, wms) -> EntityDefinition:
    return EntityDefinition(
        entity_type="Vendor",
        status_table=VendorSyncStatus,
        source=SqlQuerySource(erp, VENDOR_QUERY, "CardCode"),
        key=text_key("CardCode"),
        mapper=lambda record, lines, ctx: mappers.map_vendor(
            record, company_name=ctx.scope, client_name=ctx.client_name
        ),
        validator=mappers.validate_business_partner,
        writer=UpsertWriter(wms, "vendors", "CardCode"),
    )


def purchase_order_definition(erp, wms) -> EntityDefinition:
    return EntityDefinition(
        entity_type="PurchaseOrder",
        status_table=PurchaseOrderSyncStatus,
        source=SqlQuerySource(erp, PURCHASE_ORDER_QUERY, "DocEntry"),
        key=int_key("DocEntry"),
        load_lines=_line_loader(erp, "POR1"),
        mapper=lambda header, lines, ctx: mappers.map_purchase_order(
            header, lines, company_name=ctx.scope, client_name=ctx.client_name
        ),
        validator=mappers.validate_document,
        writer=UpsertWriter(wms, "purchase-orders", "DocEntry"),
        doc_num=_doc_num,
    )


def sales_order_definition(erp, wms) -> EntityDefinition:
    return EntityDefinition(
        entity_type="SalesOrder",
        status_table=SalesOrderSyncStatus,
        source=SqlQuerySource(erp, SALES_ORDER_QUERY, "DocEntry"),
        key=int_key("DocEntry"),
        load_lines=_line_loader(erp, "RDR1"),
        mapper=lambda header, lines, ctx: mappers.map_pick_ticket(
            header, lines, company_name=ctx.scope, client_name=ctx.client_name
        ),
        validator=mappers.validate_document,
        writer=UpsertWriter(wms, "pick-tickets", "DocEntry"),
        doc_num=_doc_num,
    )


ENTITY_DEFINITIONS = {
    "Product": product_definition,
    "Customer": customer_definition,
    "Vendor": vendor_definition,
    "PurchaseOrder": purchase_order_definition,
    "SalesOrder": sales_order_definition,
}
