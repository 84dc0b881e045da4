"""
Unit tests for the permission evaluator.

Tests cover:
- Owner, author and viewer shortcuts
- Rule scopes and column restrictions
- Default rules and fallback policy
- Non-transitive trust
- Task creation on open and closed boards
- Combined decisions for multi-field ops
"""

from sdk.skyboard_sdk.permissions import (
    DEFAULT_RULES,
    Decision,
    Evaluator,
    OperationType,
    Scope,
    field_operation,
    owner_trusted_dids,
)
from sdk.skyboard_sdk.records import OpFields, PermissionRule
from tests.factories import ALICE, BOB, CAROL, DAVE, make_board, make_trust


def _evaluator(rules=None, trusted=(), open=False, viewer=None):
    return Evaluator(
        owner_did=ALICE,
        trusted=frozenset(trusted),
        rules=tuple(rules) if rules is not None else DEFAULT_RULES,
        open=open,
        viewer=viewer,
    )


class TestDecide:
    """Tests for Evaluator.decide."""

    def test_owner_always_allowed(self):
        """Board owner edits any task."""
        ev = _evaluator(rules=[PermissionRule("edit_title", "author_only")])
        assert ev.decide(ALICE, "edit_title", task_author=BOB) is Decision.ALLOW

    def test_author_always_allowed(self):
        """Task author edits their own task."""
        ev = _evaluator(rules=[PermissionRule("edit_title", "author_only")])
        assert ev.decide(BOB, "edit_title", task_author=BOB) is Decision.ALLOW

    def test_viewer_allowed(self):
        """The local viewer's own edits count as applied."""
        ev = _evaluator(viewer=CAROL)
        assert ev.decide(CAROL, "edit_title", task_author=BOB) is Decision.ALLOW

    def test_trusted_allowed_by_default(self):
        """Default rules allow trusted principals."""
        ev = _evaluator(trusted=[BOB])
        for op in OperationType:
            assert ev.decide(BOB, op.value, task_author=ALICE) is Decision.ALLOW

    def test_untrusted_pending_by_default(self):
        """Default rules hold untrusted edits as proposals."""
        ev = _evaluator()
        assert ev.decide(CAROL, "edit_title", task_author=ALICE) is Decision.PENDING

    def test_unknown_operation_pending(self):
        """Unknown operation types fail closed, even for the owner."""
        ev = _evaluator(trusted=[BOB])
        assert ev.decide(ALICE, "delete_board", task_author=ALICE) is Decision.PENDING
        assert ev.decide(BOB, "rename", task_author=ALICE) is Decision.PENDING

    def test_anyone_scope(self):
        """anyone scope allows untrusted principals."""
        ev = _evaluator(rules=[PermissionRule("move_task", "anyone")])
        assert ev.decide(CAROL, "move_task", task_author=ALICE) is Decision.ALLOW

    def test_author_only_scope_denies_others(self):
        """author_only denies trusted non-authors."""
        ev = _evaluator(rules=[PermissionRule("edit_description", "author_only")], trusted=[BOB])
        assert ev.decide(BOB, "edit_description", task_author=CAROL) is Decision.DENY

    def test_no_matching_rule_falls_back(self):
        """Operations without a rule: trusted allowed, others pending."""
        ev = _evaluator(rules=[PermissionRule("move_task", "anyone")], trusted=[BOB])
        assert ev.decide(BOB, "reorder", task_author=ALICE) is Decision.ALLOW
        assert ev.decide(CAROL, "reorder", task_author=ALICE) is Decision.PENDING

    def test_broadest_scope_wins(self):
        """Among matching rules the broadest scope applies."""
        ev = _evaluator(
            rules=[
                PermissionRule("edit_title", "author_only"),
                PermissionRule("edit_title", "anyone"),
            ]
        )
        assert ev.effective_scope("edit_title") is Scope.ANYONE
        assert ev.decide(CAROL, "edit_title", task_author=ALICE) is Decision.ALLOW

    def test_column_restricted_rule(self):
        """A column-restricted rule only matches its columns."""
        ev = _evaluator(rules=[PermissionRule("move_task", "anyone", column_ids=("todo",))])
        assert ev.decide(CAROL, "move_task", task_author=ALICE, column_id="todo") is Decision.ALLOW
        assert ev.decide(CAROL, "move_task", task_author=ALICE, column_id="done") is Decision.PENDING
        assert ev.decide(CAROL, "move_task", task_author=ALICE) is Decision.PENDING

    def test_unknown_scope_ignored(self):
        """Rules with an unknown scope do not match."""
        ev = _evaluator(rules=[PermissionRule("edit_title", "everyone")])
        assert ev.effective_scope("edit_title") is None


class TestTrust:
    """Tests for trust collection."""

    def test_only_owner_trusts_count(self):
        """Trust granted by a trusted principal is not transitive."""
        board = make_board()
        trusts = [
            make_trust(board, BOB),
            make_trust(board, CAROL, did=BOB),
        ]
        assert owner_trusted_dids(board, trusts) == frozenset({BOB})

        ev = Evaluator.for_board(board, trusts)
        assert ev.is_trusted(BOB)
        assert not ev.is_trusted(CAROL)

    def test_trust_for_other_board_ignored(self):
        """Trust records for another board do not count."""
        board = make_board()
        other = make_board(rkey="board2")
        assert owner_trusted_dids(board, [make_trust(other, BOB)]) == frozenset()

    def test_for_board_uses_default_rules(self):
        """A board without rules gets the default rule set."""
        ev = Evaluator.for_board(make_board(), [])
        assert ev.rules == DEFAULT_RULES
        assert ev.owner_did == ALICE

    def test_for_board_uses_board_rules(self):
        """Board rules and openness carry over."""
        board = make_board(rules=[{"operation": "create_task", "scope": "anyone"}])
        ev = Evaluator.for_board(board, [], viewer=DAVE)
        assert ev.rules == (PermissionRule("create_task", "anyone"),)
        assert ev.open is True
        assert ev.viewer == DAVE


class TestDecideCreate:
    """Tests for task creation decisions."""

    def test_owner_creates(self):
        """Owner tasks are part of the board."""
        assert _evaluator().decide_create(ALICE) is Decision.ALLOW

    def test_trusted_creates(self):
        """Trusted principals create tasks under default rules."""
        assert _evaluator(trusted=[BOB]).decide_create(BOB) is Decision.ALLOW

    def test_untrusted_on_closed_board(self):
        """Untrusted tasks on a closed board are denied."""
        assert _evaluator().decide_create(CAROL) is Decision.DENY

    def test_untrusted_on_open_board(self):
        """Untrusted tasks on an open board are proposals."""
        assert _evaluator(open=True).decide_create(CAROL) is Decision.PENDING

    def test_anyone_create_rule(self):
        """create_task scoped to anyone lets anyone add tasks."""
        ev = _evaluator(rules=[PermissionRule("create_task", "anyone")])
        assert ev.decide_create(CAROL, "todo") is Decision.ALLOW


class TestOpFields:
    """Tests for multi-field op decisions."""

    def test_field_operations(self):
        """Each field maps to its operation type."""
        fields = OpFields(position="a1")
        assert field_operation("title", fields) == "edit_title"
        assert field_operation("description", fields) == "edit_description"
        assert field_operation("column_id", fields) == "move_task"
        assert field_operation("position", fields) == "reorder"
        assert field_operation("label_ids", fields) == "edit_title"
        moving = OpFields(column_id="done", position="a1")
        assert field_operation("position", moving) == "move_task"

    def test_most_restrictive_wins(self):
        """One pending field holds the whole op."""
        ev = _evaluator(rules=[PermissionRule("reorder", "anyone")])
        assert ev.decide_op_fields(CAROL, OpFields(position="a1"), ALICE, "todo") is Decision.ALLOW
        decision = ev.decide_op_fields(CAROL, OpFields(position="a1", title="x"), ALICE, "todo")
        assert decision is Decision.PENDING

    def test_deny_beats_pending(self):
        """A denied field denies the op."""
        ev = _evaluator(rules=[PermissionRule("edit_title", "author_only")])
        decision = ev.decide_op_fields(CAROL, OpFields(title="x", description="y"), ALICE, "todo")
        assert decision is Decision.DENY

    def test_move_checks_destination_column(self):
        """Column moves are checked against the destination column."""
        ev = _evaluator(rules=[PermissionRule("move_task", "anyone", column_ids=("done",))])
        into_done = OpFields(column_id="done")
        into_doing = OpFields(column_id="doing")
        assert ev.decide_op_fields(CAROL, into_done, ALICE, "todo") is Decision.ALLOW
        assert ev.decide_op_fields(CAROL, into_doing, ALICE, "todo") is Decision.PENDING

    def test_empty_op(self):
        """An op touching nothing is applied only for privileged actors."""
        ev = _evaluator(trusted=[BOB])
        assert ev.decide_op_fields(BOB, OpFields(), ALICE, "todo") is Decision.ALLOW
        assert ev.decide_op_fields(CAROL, OpFields(), ALICE, "todo") is Decision.PENDING
        assert ev.decide_op_fields(CAROL, OpFields(), CAROL, "todo") is Decision.ALLOW
