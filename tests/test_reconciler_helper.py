import base64
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from kmm.modules.api import (
    LocalObjectReference,
    Module,
    ModuleConfig,
    ModuleLoaderData,
    NamespacedName,
    NodeModulesConfig,
    ObjectMeta,
    Secret,
    TLSOptions,
)
from kmm.modules.client import ClientError, ConflictError, NotFoundError
from kmm.modules.nmc import module_configured_label, module_in_use_label
from kmm.modules.reconciler import MODULE_FINALIZER, AggregateError
from kmm.modules.registry import AnonymousAuthGetter, SecretAuthGetter

CONFIGURED = module_configured_label("ns", "mod")
IN_USE = module_in_use_label("ns", "mod")


def make_mld(**overrides) -> ModuleLoaderData:
    values = dict(name="mod", namespace="ns", kernel_version="5.14", container_image="img:5.14")
    values.update(overrides)
    return ModuleLoaderData(**values)


def configured_nmc(make_nmc, helper, name: str, labels=None) -> NodeModulesConfig:
    """NMC already configuring ns/mod."""
    nmc = make_nmc(name, labels={CONFIGURED: "", IN_USE: ""} if labels is None else labels)
    mld = make_mld()
    helper.nmc_helper.set_module_config(
        nmc, mld, ModuleConfig(kernel_version=mld.kernel_version, container_image=mld.container_image)
    )
    return nmc


def foreign_entry() -> dict:
    """Entry of another module carrying fields the models do not declare."""
    return {
        "name": "other",
        "namespace": "other-ns",
        "config": {
            "kernelVersion": "5.14",
            "containerImage": "o:1",
            "imagePullPolicy": "Always",
        },
        "tolerations": [{"key": "dedicated", "operator": "Exists"}],
    }


def stored_entry(fake_client, node: str, name: str) -> dict:
    raw = fake_client.objects[("NodeModulesConfig", "", node)]
    return next(m for m in raw["spec"]["modules"] if m["name"] == name)


# =============================================================================
# get_requested_module / set_finalizer
# =============================================================================

@pytest.mark.asyncio
async def test_get_requested_module(helper, fake_client, make_module):
    fake_client.add(make_module())

    mod = await helper.get_requested_module(NamespacedName(name="mod", namespace="ns"))

    assert mod.metadata.name == "mod"
    assert mod.spec.selector == {"role": "worker"}


@pytest.mark.asyncio
async def test_get_requested_module_not_found(helper):
    with pytest.raises(NotFoundError):
        await helper.get_requested_module(NamespacedName(name="mod", namespace="ns"))


@pytest.mark.asyncio
async def test_set_finalizer_already_set(helper, fake_client, make_module):
    mod = make_module(finalizers=[MODULE_FINALIZER])
    fake_client.add(mod)

    await helper.set_finalizer(mod)

    assert fake_client.writes() == []


@pytest.mark.asyncio
async def test_set_finalizer_not_set(helper, fake_client, make_module):
    mod = make_module(finalizers=["other"])
    fake_client.add(mod)

    await helper.set_finalizer(mod)

    _, kind, name, patch = fake_client.writes()[0]
    assert (kind, name) == ("Module", "mod")
    assert patch == {"metadata": {"finalizers": ["other", MODULE_FINALIZER]}}
    assert mod.metadata.finalizers == ["other"]


@pytest.mark.asyncio
async def test_set_finalizer_patch_failed(helper, fake_client, failing, make_module):
    mod = make_module()
    fake_client.add(mod)
    failing("patch", "mod")

    with pytest.raises(ClientError):
        await helper.set_finalizer(mod)


# =============================================================================
# get_nodes_list_by_selector / get_nmcs_by_module_set
# =============================================================================

@pytest.mark.asyncio
async def test_get_nodes_list_by_selector(helper, fake_client, make_module, make_node):
    fake_client.add(make_node("node-1"))
    fake_client.add(make_node("node-2", labels={"role": "infra"}))
    fake_client.add(make_node("node-3"))

    nodes = await helper.get_nodes_list_by_selector(make_module())

    assert [n.metadata.name for n in nodes] == ["node-1", "node-3"]
    assert fake_client.calls[-1] == ("list", "Node", "", {"role": "worker"})


@pytest.mark.asyncio
async def test_get_nodes_list_by_selector_failed(helper, failing, make_module):
    failing("list", "Node")

    with pytest.raises(ClientError):
        await helper.get_nodes_list_by_selector(make_module())


@pytest.mark.asyncio
async def test_get_nmcs_by_module_set(helper, fake_client, make_module, make_nmc):
    fake_client.add(make_nmc("node-1", labels={CONFIGURED: ""}))
    fake_client.add(make_nmc("node-2", labels={IN_USE: ""}))
    fake_client.add(make_nmc("node-3", labels={CONFIGURED: "", IN_USE: ""}))

    names = await helper.get_nmcs_by_module_set(make_module())

    assert names == {"node-1", "node-3"}


@pytest.mark.asyncio
async def test_get_nmcs_by_module_set_failed(helper, failing, make_module):
    failing("list", "NodeModulesConfig")

    with pytest.raises(ClientError):
        await helper.get_nmcs_by_module_set(make_module())


# =============================================================================
# enable_module_on_node
# =============================================================================

@pytest.mark.asyncio
async def test_enable_image_does_not_exist(helper, fake_client, registry_mock, make_node):
    """A missing image is a silent no-op"""
    registry_mock.image_exists.return_value = False

    await helper.enable_module_on_node(make_mld(), make_node("node-1"))

    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_enable_image_check_failed(helper, fake_client, registry_mock, make_node):
    registry_mock.image_exists.side_effect = RuntimeError("registry down")

    with pytest.raises(RuntimeError):
        await helper.enable_module_on_node(make_mld(), make_node("node-1"))

    assert fake_client.writes() == []


@pytest.mark.asyncio
async def test_enable_passes_registry_options(helper, registry_mock, make_node):
    tls = TLSOptions(insecure_skip_tls_verify=True)

    await helper.enable_module_on_node(make_mld(registry_tls=tls), make_node("node-1"))

    image, passed_tls, auth_getter = registry_mock.image_exists.call_args[0]
    assert image == "img:5.14"
    assert passed_tls == tls
    assert isinstance(auth_getter, AnonymousAuthGetter)


@pytest.mark.asyncio
async def test_enable_uses_pull_secret(helper, registry_mock, make_node):
    mld = make_mld(image_repo_secret=LocalObjectReference(name="pull-secret"))

    await helper.enable_module_on_node(mld, make_node("node-1"))

    auth_getter = registry_mock.image_exists.call_args[0][2]
    assert isinstance(auth_getter, SecretAuthGetter)
    assert auth_getter.secret == NamespacedName(name="pull-secret", namespace="ns")


@pytest.mark.asyncio
async def test_enable_nmc_does_not_exist(helper, fake_client, make_node):
    mld = make_mld(
        in_tree_module_to_remove="intree",
        registry_tls=TLSOptions(insecure=True),
        service_account_name="loader",
    )

    await helper.enable_module_on_node(mld, make_node("node-1"))

    assert [call[0] for call in fake_client.writes()] == ["create"]
    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    assert nmc.metadata.labels == {CONFIGURED: "", IN_USE: ""}
    assert len(nmc.metadata.owner_references) == 1
    assert nmc.metadata.owner_references[0].uid == "node-1-uid"

    entry = nmc.spec.modules[0]
    assert entry.service_account_name == "loader"
    assert entry.config == ModuleConfig(
        kernel_version="5.14",
        container_image="img:5.14",
        in_tree_module_to_remove="intree",
        insecure_pull=True,
    )


@pytest.mark.asyncio
async def test_enable_nmc_exists(helper, fake_client, make_node, make_nmc):
    """An existing NMC gets a minimal patch guarded by its resourceVersion"""
    other = module_configured_label("other", "mod")
    fake_client.add(make_nmc("node-1", labels={other: ""}))
    version = fake_client.stored(NodeModulesConfig, "node-1").metadata.resource_version

    await helper.enable_module_on_node(make_mld(), make_node("node-1"))

    _, kind, name, patch = fake_client.writes()[0]
    assert (kind, name) == ("NodeModulesConfig", "node-1")
    assert patch["metadata"]["resourceVersion"] == version
    assert patch["metadata"]["labels"] == {CONFIGURED: "", IN_USE: ""}
    assert [m["name"] for m in patch["spec"]["modules"]] == ["mod"]

    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    assert set(nmc.metadata.labels) == {other, CONFIGURED, IN_USE}


@pytest.mark.asyncio
async def test_enable_keeps_undeclared_fields_of_other_entries(
    helper, fake_client, make_node, make_nmc
):
    fake_client.add(make_nmc("node-1"))
    fake_client.objects[("NodeModulesConfig", "", "node-1")]["spec"] = {"modules": [foreign_entry()]}

    await helper.enable_module_on_node(make_mld(), make_node("node-1"))

    other = stored_entry(fake_client, "node-1", "other")
    assert other["config"]["imagePullPolicy"] == "Always"
    assert other["config"]["containerImage"] == "o:1"
    assert other["tolerations"] == [{"key": "dedicated", "operator": "Exists"}]
    assert stored_entry(fake_client, "node-1", "mod")["config"]["containerImage"] == "img:5.14"


@pytest.mark.asyncio
async def test_enable_twice_is_idempotent(helper, fake_client, make_node):
    node = make_node("node-1")

    await helper.enable_module_on_node(make_mld(), node)
    once = fake_client.stored(NodeModulesConfig, "node-1")
    await helper.enable_module_on_node(make_mld(), node)
    twice = fake_client.stored(NodeModulesConfig, "node-1")

    assert twice.spec == once.spec
    assert twice.metadata.labels == once.metadata.labels
    assert [call[0] for call in fake_client.writes()] == ["create"]


@pytest.mark.asyncio
async def test_enable_updates_changed_image(helper, fake_client, make_node):
    node = make_node("node-1")
    await helper.enable_module_on_node(make_mld(), node)

    await helper.enable_module_on_node(make_mld(container_image="img:v2"), node)

    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    assert len(nmc.spec.modules) == 1
    assert nmc.spec.modules[0].config.container_image == "img:v2"


@pytest.mark.asyncio
async def test_enable_conflict_propagates(helper, fake_client, make_node, make_nmc):
    fake_client.add(make_nmc("node-1"))
    fake_client.fail("patch", "node-1", ConflictError("modified", status=409))

    with pytest.raises(ConflictError):
        await helper.enable_module_on_node(make_mld(), make_node("node-1"))


# =============================================================================
# disable_module_on_node / remove_module_from_nmc
# =============================================================================

@pytest.mark.asyncio
async def test_disable_nmc_does_not_exist(helper, fake_client):
    await helper.disable_module_on_node("ns", "mod", "node-1")

    assert fake_client.writes() == []


@pytest.mark.asyncio
async def test_disable_nmc_exists(helper, fake_client, make_nmc):
    fake_client.add(configured_nmc(make_nmc, helper, "node-1"))

    await helper.disable_module_on_node("ns", "mod", "node-1")

    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    assert nmc.spec.modules == []
    assert nmc.metadata.labels == {IN_USE: ""}


@pytest.mark.asyncio
async def test_disable_get_failed(helper, failing):
    failing("get", "node-1")

    with pytest.raises(ClientError):
        await helper.disable_module_on_node("ns", "mod", "node-1")


@pytest.mark.asyncio
async def test_remove_module_from_nmc(helper, fake_client, make_nmc):
    fake_client.add(configured_nmc(make_nmc, helper, "node-1"))
    nmc = fake_client.stored(NodeModulesConfig, "node-1")

    await helper.remove_module_from_nmc(nmc, "ns", "mod")

    _, _, _, patch = fake_client.writes()[0]
    assert patch["metadata"]["labels"] == {CONFIGURED: None}
    assert patch["metadata"]["resourceVersion"] == nmc.metadata.resource_version
    assert patch["spec"] == {"modules": []}


@pytest.mark.asyncio
async def test_remove_module_from_nmc_patch_failed(helper, fake_client, failing, make_nmc):
    fake_client.add(configured_nmc(make_nmc, helper, "node-1"))
    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    failing("patch", "node-1")

    with pytest.raises(ClientError):
        await helper.remove_module_from_nmc(nmc, "ns", "mod")


@pytest.mark.asyncio
async def test_remove_persists_entry_without_label(helper, fake_client, make_nmc):
    """An entry is removed even when the configured label is already gone"""
    fake_client.add(configured_nmc(make_nmc, helper, "node-1", labels={}))
    nmc = fake_client.stored(NodeModulesConfig, "node-1")

    await helper.remove_module_from_nmc(nmc, "ns", "mod")

    assert fake_client.stored(NodeModulesConfig, "node-1").spec.modules == []


@pytest.mark.asyncio
async def test_remove_label_without_entry(helper, fake_client, make_nmc):
    fake_client.add(make_nmc("node-1", labels={CONFIGURED: ""}))
    nmc = fake_client.stored(NodeModulesConfig, "node-1")

    await helper.remove_module_from_nmc(nmc, "ns", "mod")

    assert fake_client.stored(NodeModulesConfig, "node-1").metadata.labels == {}


@pytest.mark.asyncio
async def test_remove_nothing_to_do(helper, fake_client, make_nmc):
    fake_client.add(make_nmc("node-1", labels={IN_USE: ""}))
    nmc = fake_client.stored(NodeModulesConfig, "node-1")

    await helper.remove_module_from_nmc(nmc, "ns", "mod")

    assert fake_client.writes() == []


@pytest.mark.asyncio
async def test_remove_keeps_undeclared_fields_of_other_entries(helper, fake_client, make_nmc):
    fake_client.add(configured_nmc(make_nmc, helper, "node-1"))
    fake_client.objects[("NodeModulesConfig", "", "node-1")]["spec"]["modules"].append(foreign_entry())
    nmc = fake_client.stored(NodeModulesConfig, "node-1")

    await helper.remove_module_from_nmc(nmc, "ns", "mod")

    raw = fake_client.objects[("NodeModulesConfig", "", "node-1")]
    assert [m["name"] for m in raw["spec"]["modules"]] == ["other"]
    other = stored_entry(fake_client, "node-1", "other")
    assert other["config"]["imagePullPolicy"] == "Always"
    assert other["tolerations"] == [{"key": "dedicated", "operator": "Exists"}]


# =============================================================================
# finalize_module
# =============================================================================

@pytest.mark.asyncio
async def test_finalize_list_failed(helper, failing, make_module):
    failing("list", "NodeModulesConfig")

    with pytest.raises(ClientError):
        await helper.finalize_module(make_module(deleting=True, finalizers=[MODULE_FINALIZER]))


@pytest.mark.asyncio
async def test_finalize_multiple_errors(helper, fake_client, make_module, make_nmc):
    """Every NMC is attempted and the errors are aggregated"""
    mod = make_module(deleting=True, finalizers=[MODULE_FINALIZER])
    fake_client.add(mod)
    for name in ("node-1", "node-2", "node-3"):
        fake_client.add(configured_nmc(make_nmc, helper, name))
    fake_client.fail("patch", "node-1", ClientError("first"))
    fake_client.fail("get", "node-3", ClientError("third"))

    with pytest.raises(AggregateError) as exc_info:
        await helper.finalize_module(mod)

    assert [str(e) for e in exc_info.value.errors] == ["first", "third"]
    assert fake_client.stored(NodeModulesConfig, "node-2").spec.modules == []
    assert fake_client.stored(Module, "mod", "ns").metadata.finalizers == [MODULE_FINALIZER]


@pytest.mark.asyncio
async def test_finalize_skips_vanished_nmc(helper, fake_client, make_module, make_nmc):
    mod = make_module(deleting=True, finalizers=[MODULE_FINALIZER])
    fake_client.add(mod)
    fake_client.add(make_nmc("node-1", labels={CONFIGURED: ""}))
    fake_client.fail("get", "node-1", NotFoundError("gone", status=404))

    await helper.finalize_module(mod)

    assert fake_client.stored(Module, "mod", "ns").metadata.finalizers == []


@pytest.mark.asyncio
async def test_finalize_no_nmcs_patches_finalizer(helper, fake_client, make_module):
    mod = make_module(deleting=True, finalizers=["other", MODULE_FINALIZER])
    fake_client.add(mod)

    await helper.finalize_module(mod)

    _, kind, _, patch = fake_client.writes()[0]
    assert kind == "Module"
    assert patch == {"metadata": {"finalizers": ["other"]}}


@pytest.mark.asyncio
async def test_finalize_module_in_use_keeps_finalizer(helper, fake_client, make_module, make_nmc):
    """Configuration is removed but the finalizer waits for the in-use label"""
    mod = make_module(deleting=True, finalizers=[MODULE_FINALIZER])
    fake_client.add(mod)
    fake_client.add(configured_nmc(make_nmc, helper, "node-1"))

    await helper.finalize_module(mod)

    nmc = fake_client.stored(NodeModulesConfig, "node-1")
    assert nmc.spec.modules == []
    assert nmc.metadata.labels == {IN_USE: ""}
    assert fake_client.stored(Module, "mod", "ns").metadata.finalizers == [MODULE_FINALIZER]
    assert [call[1] for call in fake_client.writes()] == ["NodeModulesConfig"]


@pytest.mark.asyncio
async def test_finalize_patch_failed(helper, fake_client, failing, make_module):
    mod = make_module(deleting=True, finalizers=[MODULE_FINALIZER])
    fake_client.add(mod)
    failing("patch", "mod")

    with pytest.raises(ClientError):
        await helper.finalize_module(mod)


@pytest.mark.asyncio
async def test_finalize_without_finalizer_is_noop(helper, fake_client, make_module):
    await helper.finalize_module(make_module(deleting=True))

    assert fake_client.writes() == []


@pytest.mark.asyncio
async def test_secret_credentials_reach_registry(helper, fake_client, registry_mock, make_node):
    """The pull secret is read from the module namespace when the registry asks"""
    auth = base64.b64encode(b"user:pass").decode()
    config = {"auths": {"quay.io": {"auth": auth}}}
    fake_client.add(
        Secret(
            metadata=ObjectMeta(name="pull-secret", namespace="ns"),
            type="kubernetes.io/dockerconfigjson",
            data={".dockerconfigjson": base64.b64encode(json.dumps(config).encode()).decode()},
        )
    )
    mld = make_mld(image_repo_secret=LocalObjectReference(name="pull-secret"))

    await helper.enable_module_on_node(mld, make_node("node-1"))

    auth_getter = registry_mock.image_exists.call_args[0][2]
    assert await auth_getter.get_auth("quay.io") == ("user", "pass")
