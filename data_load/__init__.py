"""Bulk merge (insert / update / upsert) with identity write-back."""

from data_load.bulk_merge import (
    MergeSummary,
    bulk_insert,
    bulk_insert_or_update,
    bulk_merge,
    bulk_update,
)
from data_load.identity import (
    get_current_identity_value,
    reseed_identity,
    reseed_identity_to_max,
)
from data_load.match_qualifiers import MatchQualifierExpression
from data_load.merge_action import MergeAction
from data_load.record_mapping import RecordMapping, register_record_mapping

__all__ = [
    "MergeAction",
    "MergeSummary",
    "MatchQualifierExpression",
    "RecordMapping",
    "register_record_mapping",
    "bulk_merge",
    "bulk_insert",
    "bulk_update",
    "bulk_insert_or_update",
    "get_current_identity_value",
    "reseed_identity",
    "reseed_identity_to_max",
]
