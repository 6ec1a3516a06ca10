from catalog_sync.services.conditions import (
    All, Any, Leaf, MappingConfigurationProvider, dependencies_met, is_truthy,
)
from catalog_sync.services.jobs import job_by_name


def _config(**values):
    return MappingConfigurationProvider(values)


def test_leaf_compares_as_string():
    config = _config(sync_price="1", retries=3)
    assert Leaf("sync_price").evaluate(config)
    assert Leaf("retries", 3).evaluate(config)
    assert not Leaf("missing").evaluate(config)


def test_empty_combinators():
    config = _config()
    assert All().evaluate(config) is True
    assert Any().evaluate(config) is False


def test_nested_tree():
    tree = All(Leaf("a"), Any(Leaf("b"), Leaf("c")))
    assert tree.evaluate(_config(a="1", b="0", c="1"))
    assert not tree.evaluate(_config(a="1", b="0", c="0"))
    assert not tree.evaluate(_config(a="0", b="1", c="1"))


def test_update_info_needs_title_or_description():
    job = job_by_name("update_info")
    assert job.conditions.evaluate(_config(sync_title="0", sync_description="1"))
    assert not job.conditions.evaluate(_config(sync_title="0", sync_description="0"))


def test_dependencies_met():
    assert dependencies_met([], _config())
    assert dependencies_met(["auto_sync_enabled"], _config(auto_sync_enabled="1"))
    assert not dependencies_met(["auto_sync_enabled"], _config(auto_sync_enabled="0"))
    assert not dependencies_met(["auto_sync_enabled"], _config())


def test_is_truthy():
    assert is_truthy(True) and is_truthy("yes") and is_truthy(1)
    assert not any(is_truthy(v) for v in (None, False, "", "0", "false", "off"))


def test_provider_defaults_to_settings():
    config = MappingConfigurationProvider()
    assert config.has("auto_sync_enabled")
    assert config.get("sync_description") == "0"
    assert config.get("nope", "fallback") == "fallback"
