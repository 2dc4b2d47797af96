"""Unit tests for the policy status reconciler."""

from unittest.mock import Mock, patch

import pytest
from kubernetes.client.rest import ApiException

from policy_status_sync.controllers.sync import PolicyReconciler
from policy_status_sync.events import NORMAL, WARNING, EventRecorder
from policy_status_sync.manager import ControllerManager
from policy_status_sync.models.options import ManagerOptions
from policy_status_sync.namespaces import SingleNamespace
from policy_status_sync.scheme import POLICY_GROUP, build_scheme

STATUS = {"compliant": "Compliant", "details": [{"compliant": "Compliant"}]}


def _policy(status=None):
    policy = {
        "apiVersion": f"{POLICY_GROUP}/v1",
        "kind": "Policy",
        "metadata": {"name": "policy-pod", "namespace": "cluster1", "uid": "abc"},
    }
    if status is not None:
        policy["status"] = status
    return policy


@pytest.fixture
def apis(hub_connection, managed_connection, monkeypatch):
    """Separate custom objects APIs for the hub and the managed cluster."""
    hub_api = Mock()
    managed_api = Mock()
    monkeypatch.setattr(type(hub_connection), "custom_objects", lambda self: hub_api)
    monkeypatch.setattr(type(managed_connection), "custom_objects", lambda self: managed_api)
    return hub_api, managed_api


@pytest.fixture
def reconciler(hub_connection, managed_connection):
    return PolicyReconciler(
        hub_client=hub_connection,
        hub_recorder=Mock(),
        managed_client=managed_connection,
        managed_recorder=Mock(),
        scheme=build_scheme(),
    )


def test_status_is_copied_to_hub(reconciler, apis):
    """Test that a changed managed status is patched onto the hub policy."""
    hub_api, managed_api = apis
    managed_api.get_namespaced_custom_object.return_value = _policy(STATUS)
    hub_api.get_namespaced_custom_object.return_value = _policy({"compliant": "NonCompliant"})

    assert reconciler.reconcile("cluster1", "policy-pod")

    kwargs = hub_api.patch_namespaced_custom_object_status.call_args.kwargs
    assert kwargs["body"] == {"status": STATUS}
    assert kwargs["group"] == POLICY_GROUP
    assert kwargs["plural"] == "policies"
    assert (kwargs["namespace"], kwargs["name"]) == ("cluster1", "policy-pod")
    reconciler.hub_recorder.event.assert_called_once()
    reconciler.managed_recorder.event.assert_called_once()


def test_unchanged_status_is_not_patched(reconciler, apis):
    """Test that no write happens when the hub already has the status."""
    hub_api, managed_api = apis
    managed_api.get_namespaced_custom_object.return_value = _policy(STATUS)
    hub_api.get_namespaced_custom_object.return_value = _policy(STATUS)

    assert not reconciler.reconcile("cluster1", "policy-pod")
    hub_api.patch_namespaced_custom_object_status.assert_not_called()


def test_empty_managed_status_is_ignored(reconciler, apis):
    """Test that a policy without status is not synced."""
    hub_api, managed_api = apis
    managed_api.get_namespaced_custom_object.return_value = _policy()

    assert not reconciler.reconcile("cluster1", "policy-pod")
    hub_api.get_namespaced_custom_object.assert_not_called()


@pytest.mark.parametrize("side", ["hub", "managed"])
def test_missing_policy_is_ignored(reconciler, apis, side):
    """Test that a policy missing on either cluster is skipped."""
    hub_api, managed_api = apis
    managed_api.get_namespaced_custom_object.return_value = _policy(STATUS)
    missing = hub_api if side == "hub" else managed_api
    missing.get_namespaced_custom_object.side_effect = ApiException(status=404)

    assert not reconciler.reconcile("cluster1", "policy-pod")
    hub_api.patch_namespaced_custom_object_status.assert_not_called()


def test_other_api_errors_propagate(reconciler, apis):
    """Test that errors other than not-found are raised to the watch loop."""
    _, managed_api = apis
    managed_api.get_namespaced_custom_object.side_effect = ApiException(status=500)

    with pytest.raises(ApiException):
        reconciler.reconcile("cluster1", "policy-pod")


def test_deleted_events_are_ignored(reconciler, apis):
    """Test that delete events do not trigger a reconcile."""
    _, managed_api = apis

    reconciler.handle_event("DELETED", _policy(STATUS))

    managed_api.get_namespaced_custom_object.assert_not_called()


def test_setup_registers_policy_watch(reconciler, managed_connection):
    """Test that the reconciler watches policies through the manager."""
    manager = ControllerManager(
        managed_connection, build_scheme(), SingleNamespace("cluster1"), ManagerOptions()
    )

    reconciler.setup_with_manager(manager)

    registration = manager._registrations[0]
    assert registration.resource.kind == "Policy"
    assert registration.handler == reconciler.handle_event


def test_failed_hub_patch_records_warning(reconciler, apis):
    """Test that a rejected hub status write is reported on the managed policy."""
    hub_api, managed_api = apis
    managed_api.get_namespaced_custom_object.return_value = _policy(STATUS)
    hub_api.get_namespaced_custom_object.return_value = _policy()
    hub_api.patch_namespaced_custom_object_status.side_effect = ApiException(
        status=403, reason="Forbidden"
    )

    with pytest.raises(ApiException):
        reconciler.reconcile("cluster1", "policy-pod")

    obj, event_type, reason, message = reconciler.managed_recorder.event.call_args[0]
    assert obj["metadata"]["name"] == "policy-pod"
    assert event_type == WARNING
    assert reason == "PolicyStatusSyncFailed"
    assert "Forbidden" in message
    reconciler.hub_recorder.event.assert_not_called()


def test_event_recorder_writes_to_object_namespace():
    """Test that an event is created in the namespace of the object it is about."""
    with patch("policy_status_sync.events.client.CoreV1Api") as mock_core:
        recorder = EventRecorder(Mock(), "policy-status-sync")
        result = recorder.event(_policy(), NORMAL, "PolicyStatusSync", "status was sent")

    namespace, body = mock_core.return_value.create_namespaced_event.call_args[0]
    assert namespace == "cluster1"
    assert body.metadata.generate_name == "policy-pod."
    assert body.involved_object.kind == "Policy"
    assert body.involved_object.uid == "abc"
    assert body.type == NORMAL
    assert body.source.component == "policy-status-sync"
    assert body.count == 1
    assert result is mock_core.return_value.create_namespaced_event.return_value


def test_event_recorder_fixed_namespace():
    """Test that a recorder bound to a namespace writes there regardless of the object."""
    with patch("policy_status_sync.events.client.CoreV1Api") as mock_core:
        EventRecorder(Mock(), "policy-status-sync", namespace="addon-ns").event(
            _policy(), WARNING, "Failed", "no luck"
        )

    assert mock_core.return_value.create_namespaced_event.call_args[0][0] == "addon-ns"


def test_event_recorder_drops_failed_writes():
    """Test that a rejected event write is logged and does not raise."""
    with patch("policy_status_sync.events.client.CoreV1Api") as mock_core:
        mock_core.return_value.create_namespaced_event.side_effect = ApiException(
            status=403, reason="Forbidden"
        )
        recorder = EventRecorder(Mock(), "policy-status-sync")

        assert recorder.event(_policy(), NORMAL, "PolicyStatusSync", "status was sent") is None
