"""
MaterializeDataContext lookups and state transitions.
"""

from unittest.mock import MagicMock

import pytest

from config import BulkHelpersConfig
from errors import MaterializationStateError
from materialization.context import MaterializationState, MaterializationTableInfo, MaterializeDataContext
from schema.table_name import TableNameTerm

from conftest import PARENT, seed_catalog

LOADING = TableNameTerm("stage", "Parent_L")
DISCARDING = TableNameTerm("stage_old", "Parent_L")


@pytest.fixture
def context(parent_def):
    return MaterializeDataContext(
        conn=MagicMock(),
        tables=[MaterializationTableInfo(PARENT, LOADING, DISCARDING, parent_def)],
        cfg=BulkHelpersConfig(),
        catalog=seed_catalog(parent_def),
    )


class TestLookup:

    def test_loading_table_by_live_name_case_insensitive(self, context):
        context.begin_populating()
        assert context.loading_table("DBO.parent") == LOADING
        assert context["[dbo].[Parent]"].discarding_table == DISCARDING
        assert context.live_tables == [PARENT]

    def test_unknown_table(self, context):
        with pytest.raises(KeyError):
            context.table("dbo.Other")

    def test_loading_table_rejected_once_finishing(self, context):
        context.begin_populating()
        context.begin_finishing()
        with pytest.raises(MaterializationStateError):
            context.loading_table(PARENT)

    def test_constraint_validation_toggle(self, context):
        context.disable_post_switch_constraint_validation()
        assert not context.post_switch_constraint_validation_enabled
        context.enable_post_switch_constraint_validation()
        assert context.post_switch_constraint_validation_enabled


class TestTransitions:

    def test_happy_path(self, context):
        context.begin_populating()
        context.begin_finishing()
        context.mark_finished()
        assert context.state is MaterializationState.FINISHED
        assert context.is_finalized

    def test_cancel_is_idempotent(self, context):
        context.begin_populating()
        context.cancel()
        context.cancel()
        assert context.is_cancelled
        assert context.is_finalized

    def test_cannot_cancel_after_finish(self, context):
        context.begin_populating()
        context.begin_finishing()
        context.mark_finished()
        with pytest.raises(MaterializationStateError):
            context.cancel()

    def test_cannot_finish_twice(self, context):
        context.begin_populating()
        context.begin_finishing()
        context.mark_failed()
        assert context.state is MaterializationState.FAILED
        with pytest.raises(MaterializationStateError):
            context.begin_finishing()

    def test_cannot_populate_twice(self, context):
        context.begin_populating()
        with pytest.raises(MaterializationStateError, match="populating to populating"):
            context.begin_populating()
