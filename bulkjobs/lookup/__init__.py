from bulkjobs.lookup.client import ItemOutcome, LookupClient
from bulkjobs.lookup.normalize import FindResult, VerifyResult

__all__ = ["ItemOutcome", "LookupClient", "FindResult", "VerifyResult"]
