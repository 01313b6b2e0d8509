import threading

import botocore.exceptions
import pytest

import sessionhost
import sessionhost.graph
import sessionhost.outputs
import sessionhost.reconcile
from sessionhost.errors import PartialApply, ProviderRejected, UnresolvedReference, ValidationFailed
from sessionhost.reconcile import GraphState


def test_run_reaches_ready_in_creation_order(scenario_graph, fake_provider):
    provider = fake_provider()
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, provider)

    records = reconciler.run()

    assert reconciler.state == GraphState.READY
    assert all(r.status == sessionhost.EntityStatus.READY for r in records.values())
    assert provider.calls.index("net") < provider.calls.index("endpoint-sg")
    assert provider.calls.index("endpoint-sg") < provider.calls.index("ssm")
    assert provider.calls[-1] == "host"
    assert reconciler.pending == []


def test_state_machine_phases(scenario_graph, fake_provider):
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, fake_provider())
    assert reconciler.state == GraphState.DECLARED

    reconciler.validate()
    assert reconciler.state == GraphState.VALIDATED

    levels = reconciler.order()
    assert reconciler.state == GraphState.ORDERED
    assert levels == scenario_graph.creation_levels()

    reconciler.apply()
    assert reconciler.state == GraphState.READY


def test_phases_cannot_be_skipped(scenario_graph, fake_provider):
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, fake_provider())

    with pytest.raises(RuntimeError, match="expected ordered"):
        reconciler.apply()


def test_invalid_graph_never_reaches_the_provider(fake_provider):
    graph = sessionhost.graph.EntityGraph([sessionhost.ComputeInstance(name="host", subnet="nowhere")])
    provider = fake_provider()
    reconciler = sessionhost.reconcile.Reconciler(graph, provider)

    with pytest.raises(ValidationFailed):
        reconciler.run()

    assert provider.calls == []
    assert reconciler.state == GraphState.DECLARED


def test_entities_in_one_level_are_created_in_parallel(fake_provider):
    graph = sessionhost.graph.EntityGraph([sessionhost.ObjectStore(name=n) for n in ("a", "b", "c")])
    barrier = threading.Barrier(3, timeout=5)

    # each create blocks until all three are in flight; sequential creation would time out
    provider = fake_provider(on_create=lambda _: barrier.wait())
    records = sessionhost.reconcile.Reconciler(graph, provider, max_workers=3).run()

    assert sorted(provider.calls) == ["a", "b", "c"]
    assert {r.status for r in records.values()} == {sessionhost.EntityStatus.READY}


def test_rejection_in_the_first_level_propagates_unchanged(scenario_graph, fake_provider):
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, fake_provider(reject={"net", "host-role"}))

    with pytest.raises(ProviderRejected) as exc_info:
        reconciler.run()

    assert exc_info.value.code == "UnauthorizedOperation"
    assert reconciler.state == GraphState.FAILED
    assert reconciler.created == []


def test_rejection_after_progress_is_a_partial_apply(scenario_graph, fake_provider):
    provider = fake_provider(reject={"ssm"})
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, provider)

    with pytest.raises(PartialApply) as exc_info:
        reconciler.run()

    error = exc_info.value
    assert sorted(error.created) == ["endpoint-sg", "host-role", "net"]
    assert error.pending == ["ssm", "host"]
    assert isinstance(error.cause, ProviderRejected)
    assert error.cause.entity == "ssm"
    assert "host" not in provider.calls
    assert reconciler.state == GraphState.FAILED
    assert reconciler.records["ssm"].status == sessionhost.EntityStatus.FAILED
    assert reconciler.records["host"].status == sessionhost.EntityStatus.PENDING


def test_cancel_mid_apply_reports_created_and_pending(scenario_graph, fake_provider):
    holder: dict[str, sessionhost.reconcile.Reconciler] = {}

    def cancel_after_security_group(name: str):
        if name == "endpoint-sg":
            holder["reconciler"].cancel()

    provider = fake_provider(on_create=cancel_after_security_group)
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, provider)
    holder["reconciler"] = reconciler

    with pytest.raises(PartialApply, match="cancelled") as exc_info:
        reconciler.run()

    assert exc_info.value.cause is None
    # the in-flight entity finishes
    assert "endpoint-sg" in exc_info.value.created
    assert exc_info.value.pending == ["ssm", "host"]
    assert sorted(provider.calls) == ["endpoint-sg", "host-role", "net"]


def test_unexpected_provider_errors_become_partial_apply(scenario_graph, fake_provider):
    def no_credentials_for_ssm(name: str):
        if name == "ssm":
            raise botocore.exceptions.NoCredentialsError()

    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, fake_provider(on_create=no_credentials_for_ssm))

    with pytest.raises(PartialApply) as exc_info:
        reconciler.run()

    assert reconciler.state == GraphState.FAILED
    assert sorted(exc_info.value.created) == ["endpoint-sg", "host-role", "net"]
    assert exc_info.value.pending == ["ssm", "host"]
    cause = exc_info.value.cause
    assert isinstance(cause, ProviderRejected)
    assert cause.entity == "ssm"
    assert cause.code == "NoCredentialsError"
    assert isinstance(cause.__cause__, botocore.exceptions.NoCredentialsError)
    assert reconciler.records["ssm"].status == sessionhost.EntityStatus.FAILED


def test_unexpected_error_before_anything_exists_is_reported_alone(scenario_graph):
    class BrokenProvider:
        def create(self, entity, state):
            msg = "boom"
            raise KeyError(msg)

    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, BrokenProvider())

    with pytest.raises(ProviderRejected, match="KeyError") as exc_info:
        reconciler.run()

    assert isinstance(exc_info.value.__cause__, KeyError)
    assert reconciler.state == GraphState.FAILED
    assert reconciler.created == []


def test_created_state_only_exposes_ready_entities():
    records = {
        "net": sessionhost.reconcile.EntityRecord(
            name="net", status=sessionhost.EntityStatus.READY, outputs={"id": "vpc-1", "subnet:a": "subnet-1"}
        ),
        "host": sessionhost.reconcile.EntityRecord(name="host", status=sessionhost.EntityStatus.CREATING),
    }
    state = sessionhost.reconcile.CreatedState(records)

    assert state.get("net", "id") == "vpc-1"
    assert state.subnet_id("net", "a") == "subnet-1"
    assert state.subnet_owner("a") == "net"
    assert state.resolve([sessionhost.Deferred("net", "id"), sessionhost.Literal("x")]) == ["vpc-1", "x"]

    with pytest.raises(UnresolvedReference, match="has not been created"):
        state.get("host", "id")
    with pytest.raises(UnresolvedReference, match="is not an output"):
        state.get("net", "arn")
    with pytest.raises(UnresolvedReference):
        state.subnet_owner("b")


def test_outputs_only_after_ready(scenario_graph, fake_provider):
    reconciler = sessionhost.reconcile.Reconciler(scenario_graph, fake_provider())

    with pytest.raises(UnresolvedReference, match="is not ready"):
        sessionhost.outputs.project(scenario_graph, reconciler.records, "us-east-1")

    records = reconciler.run()
    outputs = sessionhost.outputs.project(scenario_graph, records, "us-east-1")

    assert outputs.instance_id == "compute_instance-host"
    assert outputs.instance_id != ""
