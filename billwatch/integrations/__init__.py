from billwatch.integrations.invoicing import InvoicingHandoff, get_invoicing_handoff
from billwatch.integrations.source_records import SourceRecordStore, SqlSourceRecordStore

__all__ = ["InvoicingHandoff", "get_invoicing_handoff", "SourceRecordStore", "SqlSourceRecordStore"]
