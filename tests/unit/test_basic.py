"""Basic tests to verify project setup."""


def test_import_policy_status_sync():
    """Test that the package can be imported."""
    import policy_status_sync

    assert policy_status_sync.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from policy_status_sync import cli

    assert cli.app is not None


def test_import_models():
    """Test that models module can be imported."""
    from policy_status_sync import models

    assert models.BootstrapOptions is not None
    assert models.LeaseRecord is not None


def test_scheme_knows_controller_types():
    """Test that the default scheme registers every kind the controller uses."""
    from policy_status_sync.scheme import POLICY_GROUP, build_scheme

    scheme = build_scheme()

    assert scheme.recognizes("Policy", POLICY_GROUP)
    assert scheme.recognizes("Lease", "coordination.k8s.io")
    assert scheme.recognizes("Pod")
    assert not scheme.recognizes("Policy")
    assert scheme.lookup("Policy", POLICY_GROUP).api_version == f"{POLICY_GROUP}/v1"


def test_scheme_instances_are_independent():
    """Test that each built scheme is its own registry."""
    from policy_status_sync.scheme import ResourceType, build_scheme

    first = build_scheme()
    second = build_scheme()
    first.add_known_type(
        ResourceType(group="example.com", version="v1", kind="Widget", plural="widgets")
    )

    assert first.recognizes("Widget", "example.com")
    assert not second.recognizes("Widget", "example.com")
