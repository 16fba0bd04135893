"""Tests for OperationContext, AttributeBag and StepLog."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from orrery_engine.context import AttributeBag, OperationContext, StepLog, StepRecord, StepStatus

pytestmark = pytest.mark.unit


class TestOperationContext:
    def test_operation_ids_are_unique(self):
        ids = {OperationContext().operation_id for _ in range(50)}
        assert len(ids) == 50

    def test_operation_id_is_read_only(self):
        ctx = OperationContext()
        with pytest.raises(AttributeError):
            ctx.operation_id = "other"

    def test_explicit_operation_id_reaches_cancellation(self):
        ctx = OperationContext(operation_id="op-1")
        assert ctx.cancellation.operation_id == "op-1"

    def test_child_shares_state_by_reference(self):
        root = OperationContext(attributes={"tenant": "acme"}, user_id="u1", conversation_id="c1")
        child = root.child("supervisor", "step-1")

        assert child.operation_id == root.operation_id
        assert child.cancellation is root.cancellation
        assert child.attributes is root.attributes
        assert child.step_log is root.step_log
        assert child.user_id == "u1"

    def test_child_parent_pointers_and_depth(self):
        root = OperationContext(conversation_id="c1")
        child = root.child("supervisor", "step-1", conversation_id="c1:writer")
        grandchild = child.child("writer", "step-2")

        assert root.depth == 0 and root.parent_agent_id is None
        assert child.depth == 1
        assert child.parent_agent_id == "supervisor"
        assert child.parent_step_ref == "step-1"
        assert child.conversation_id == "c1:writer"
        assert grandchild.depth == 2
        assert grandchild.conversation_id == "c1:writer"

    def test_attribute_written_by_child_is_visible_to_root(self):
        root = OperationContext()
        root.child("a", None).attributes["found"] = 42
        assert root.attributes["found"] == 42

    def test_cancel_through_child_cancels_root(self):
        root = OperationContext()
        assert root.child("a", None).cancel("stop") is True
        assert root.is_cancelled
        assert root.cancellation.reason == "stop"


class TestAttributeBag:
    def test_mapping_protocol(self):
        bag = AttributeBag({"a": 1})
        bag["b"] = 2
        del bag["a"]
        assert dict(bag) == {"b": 2}
        assert len(bag) == 1
        assert bag.get("missing", "x") == "x"

    def test_snapshot_is_a_copy(self):
        bag = AttributeBag({"a": 1})
        snap = bag.snapshot()
        bag["a"] = 2
        assert snap == {"a": 1}

    def test_concurrent_writers_from_threads(self):
        bag = AttributeBag()

        def write(i):
            for j in range(200):
                bag[f"k{i}-{j}"] = j

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, range(8)))

        assert len(bag) == 8 * 200

    def test_iteration_while_writing_does_not_fail(self):
        bag = AttributeBag({f"k{i}": i for i in range(10)})
        for key in bag:
            bag[key + "-copy"] = 1
        assert len(bag) == 20


class TestStepLog:
    def test_append_order_and_lookup(self):
        log = StepLog()
        first = StepRecord(agent_name="a", index=0)
        second = StepRecord(agent_name="b", index=0, parent_agent_id="a", parent_step_ref=first.step_id)
        log.append(first)
        log.append(second)

        assert [r.agent_name for r in log] == ["a", "b"]
        assert log.get(second.step_id) is second
        assert log.get("nope") is None
        assert log.for_agent("b") == [second]
        assert log.children_of(first.step_id) == [second]

    def test_concurrent_appends(self):
        log = StepLog()

        def append(i):
            for j in range(100):
                log.append(StepRecord(agent_name=f"agent{i}", index=j))

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(append, range(4)))

        assert len(log) == 400

    def test_to_list_serialises_steps(self):
        log = StepLog()
        step = StepRecord(agent_name="a", index=0)
        step.finish(StepStatus.ABORTED, "stop")
        log.append(step)

        row = log.to_list()[0]
        assert row["status"] == "aborted"
        assert row["error"] == "stop"
        assert row["finished_at"] is not None
