from __future__ import annotations

import asyncio

import pytest

from mcphost.config import ConfiguredServer, RegistrySettings
from mcphost.mcp.client import MAX_PAGES
from mcphost.mcp.errors import (
    MCPAuthorizationError,
    MCPPaginationLimitExceeded,
    MCPServerNotFoundError,
    MCPToolNotFoundError,
    MCPTransportError,
    MCPValidationError,
)
from mcphost.mcp.policy import AutonomyLevel, AutonomyPolicy
from mcphost.mcp.registry import GenerationCache, MCPRegistry, ServerStatus
from tests.support.mcp_helpers import FakeConnector, FakeServer, server_config


def _registry(
    connector: FakeConnector,
    *,
    tool_cap: int = 64,
    server_cap: int = 16,
    reserved: frozenset[str] = frozenset(),
    policy: AutonomyPolicy | None = None,
) -> MCPRegistry:
    settings = RegistrySettings(
        tool_cap=tool_cap,
        server_cap=server_cap,
        reserved_tool_names=reserved,
    )
    return MCPRegistry(settings, connector=connector, policy=policy)


@pytest.mark.asyncio
async def test_add_server_registers_tools_and_bumps_generation() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file", "write_file"]])})
    registry = _registry(connector)

    tools = await registry.add_server("fs", server_config())

    assert [info.name for info in tools] == ["read_file", "write_file"]
    assert registry.generation() == 1
    assert await registry.server_count() == 1
    assert await registry.total_tool_count() == 2
    summary = await registry.get("fs")
    assert summary is not None
    assert summary.status is ServerStatus.HEALTHY
    assert summary.server_info == "fake 1.0.0"


@pytest.mark.asyncio
async def test_server_names_are_trimmed() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)

    await registry.add_server("  fs  ", server_config())

    assert [s.name for s in await registry.list_servers()] == ["fs"]


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "has space", "semi;colon"])
async def test_malformed_server_names_are_rejected(name: str) -> None:
    connector = FakeConnector()
    registry = _registry(connector)

    with pytest.raises(MCPValidationError):
        await registry.add_server(name, server_config())
    assert connector.calls == []
    assert registry.generation() == 0


@pytest.mark.asyncio
async def test_duplicate_server_name_fails_and_keeps_existing_entry() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())

    with pytest.raises(MCPValidationError, match="already registered"):
        await registry.add_server("fs", server_config())

    assert connector.calls == ["fs"]
    assert registry.generation() == 1
    assert await registry.find_tool_server("read_file") == "fs"
    assert connector.latest("fs").closed is False


@pytest.mark.asyncio
async def test_tool_collision_across_servers_is_rejected() -> None:
    connector = FakeConnector(
        {
            "fs": FakeServer([["read_file", "write_file"]]),
            "fs2": FakeServer([["read_file"]]),
        }
    )
    registry = _registry(connector)
    await registry.add_server("fs", server_config())

    with pytest.raises(MCPValidationError, match="collides"):
        await registry.add_server("fs2", server_config())

    assert connector.latest("fs2").closed is True
    assert [s.name for s in await registry.list_servers()] == ["fs"]
    assert registry.generation() == 1
    assert await registry.total_tool_count() == 2


@pytest.mark.asyncio
async def test_duplicate_tool_within_one_server_is_rejected() -> None:
    connector = FakeConnector({"dup": FakeServer([["a"], ["a"]])})
    registry = _registry(connector)

    with pytest.raises(MCPValidationError, match="twice"):
        await registry.add_server("dup", server_config())
    assert connector.latest("dup").closed is True


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_name", ["has space", "dot.name", "slash/name", ""])
async def test_invalid_tool_names_are_rejected(bad_name: str) -> None:
    connector = FakeConnector({"bad": FakeServer([[bad_name]])})
    registry = _registry(connector)

    with pytest.raises(MCPValidationError, match="invalid name"):
        await registry.add_server("bad", server_config())
    assert registry.generation() == 0


@pytest.mark.asyncio
async def test_reserved_tool_names_are_rejected() -> None:
    connector = FakeConnector({"shadow": FakeServer([["shell"]])})
    registry = _registry(connector, reserved=frozenset({"shell"}))

    with pytest.raises(MCPValidationError, match="builtin"):
        await registry.add_server("shadow", server_config())
    assert await registry.server_count() == 0


@pytest.mark.asyncio
async def test_tool_cap_is_enforced() -> None:
    connector = FakeConnector(
        {"a": FakeServer([["a1", "a2"]]), "b": FakeServer([["b1", "b2"]])}
    )
    registry = _registry(connector, tool_cap=3)
    await registry.add_server("a", server_config())

    with pytest.raises(MCPValidationError, match="tool cap"):
        await registry.add_server("b", server_config())
    assert await registry.total_tool_count() == 2


@pytest.mark.asyncio
async def test_server_cap_is_checked_before_spawning() -> None:
    connector = FakeConnector({"a": FakeServer([["a1"]]), "b": FakeServer([["b1"]])})
    registry = _registry(connector, server_cap=1)
    await registry.add_server("a", server_config())

    with pytest.raises(MCPValidationError, match="server cap"):
        await registry.add_server("b", server_config())
    assert connector.calls == ["a"]


@pytest.mark.asyncio
async def test_three_pages_register_six_tools_with_three_requests() -> None:
    connector = FakeConnector(
        {"paged": FakeServer([["t1", "t2"], ["t3", "t4"], ["t5", "t6"]])}
    )
    registry = _registry(connector)

    tools = await registry.add_server("paged", server_config())

    assert [info.name for info in tools] == ["t1", "t2", "t3", "t4", "t5", "t6"]
    assert len(connector.latest("paged").method_calls("tools/list")) == 3


@pytest.mark.asyncio
async def test_pagination_limit_fails_add_and_closes_client() -> None:
    connector = FakeConnector({"loop": FakeServer(always_cursor=True)})
    registry = _registry(connector)

    with pytest.raises(MCPPaginationLimitExceeded):
        await registry.add_server("loop", server_config())

    transport = connector.latest("loop")
    assert len(transport.method_calls("tools/list")) == MAX_PAGES
    assert transport.closed is True
    assert registry.generation() == 0


@pytest.mark.asyncio
async def test_spawn_failure_leaves_registry_untouched() -> None:
    connector = FakeConnector({"gone": FakeServer()})
    connector.spawn_failures.add("gone")
    registry = _registry(connector)

    with pytest.raises(MCPTransportError) as excinfo:
        await registry.add_server("gone", server_config())

    assert excinfo.value.category == "spawn_error"
    assert await registry.server_count() == 0
    assert registry.generation() == 0


@pytest.mark.asyncio
async def test_resources_and_prompts_follow_advertised_capabilities() -> None:
    connector = FakeConnector(
        {
            "docs": FakeServer(
                [["search"]],
                resources=[{"uri": "file:///readme", "name": "readme"}],
                prompts=[{"name": "summarize"}],
            ),
            "bare": FakeServer([["ping"]]),
        }
    )
    registry = _registry(connector)
    await registry.add_server("docs", server_config())
    await registry.add_server("bare", server_config())

    resources = await registry.list_resources()
    prompts = await registry.list_prompts()

    assert [(r.server, r.resource.uri) for r in resources] == [("docs", "file:///readme")]
    assert [(p.server, p.prompt.name) for p in prompts] == [("docs", "summarize")]
    assert connector.latest("bare").method_calls("resources/list") == []
    assert connector.latest("bare").method_calls("prompts/list") == []


@pytest.mark.asyncio
async def test_remove_server_closes_and_bumps_generation() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())

    await registry.remove_server("fs")

    assert connector.latest("fs").close_calls == 1
    assert await registry.server_count() == 0
    assert registry.generation() == 2
    with pytest.raises(MCPServerNotFoundError):
        await registry.remove_server("fs")
    assert registry.generation() == 2


@pytest.mark.asyncio
async def test_reconnect_swaps_client_and_keeps_name() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    old = connector.latest("fs")
    connector.servers["fs"] = FakeServer([["read_file", "stat"]])

    tools = await registry.reconnect_server("fs")

    assert [info.name for info in tools] == ["read_file", "stat"]
    assert old.closed is True
    assert connector.latest("fs") is not old
    assert registry.generation() == 2
    assert await registry.find_tool_server("stat") == "fs"


@pytest.mark.asyncio
async def test_reconnect_collision_with_other_server_fails_and_keeps_old_state() -> None:
    connector = FakeConnector(
        {"fs": FakeServer([["read_file"]]), "git": FakeServer([["git_log"]])}
    )
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    await registry.add_server("git", server_config())
    old = connector.latest("fs")
    connector.servers["fs"] = FakeServer([["read_file", "git_log"]])

    with pytest.raises(MCPValidationError, match="collides"):
        await registry.reconnect_server("fs")

    assert connector.latest("fs").closed is True
    assert old.closed is False
    assert registry.generation() == 2
    assert await registry.find_tool_server("git_log") == "git"
    result = await registry.call_tool("fs", "read_file")
    assert result.text() == "read_file:null"


@pytest.mark.asyncio
async def test_reconnect_unknown_server_fails() -> None:
    registry = _registry(FakeConnector())
    with pytest.raises(MCPServerNotFoundError):
        await registry.reconnect_server("nope")


@pytest.mark.asyncio
async def test_call_tool_routes_to_named_server() -> None:
    connector = FakeConnector(
        {"fs": FakeServer([["read_file"]]), "git": FakeServer([["git_log"]])}
    )
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    await registry.add_server("git", server_config())

    result = await registry.call_tool("git", "git_log", {"limit": 2})
    routed = await registry.call_registered_tool("read_file", {"path": "a"})

    assert result.text() == 'git_log:{"limit": 2}'
    assert routed.text() == 'read_file:{"path": "a"}'
    assert connector.latest("fs").method_calls("tools/call")[0].params == {
        "name": "read_file",
        "arguments": {"path": "a"},
    }


@pytest.mark.asyncio
async def test_call_tool_unknown_server_or_tool() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())

    with pytest.raises(MCPServerNotFoundError):
        await registry.call_tool("nope", "read_file")
    with pytest.raises(MCPToolNotFoundError):
        await registry.call_tool("fs", "write_file")
    with pytest.raises(MCPToolNotFoundError):
        await registry.call_registered_tool("write_file")
    assert connector.latest("fs").method_calls("tools/call") == []


@pytest.mark.asyncio
async def test_read_resource_and_get_prompt_dispatch() -> None:
    connector = FakeConnector(
        {
            "docs": FakeServer(
                [["search"]],
                resources=[{"uri": "file:///readme", "name": "readme"}],
                prompts=[{"name": "summarize"}],
            )
        }
    )
    registry = _registry(connector)
    await registry.add_server("docs", server_config())

    contents = await registry.read_resource("docs", "file:///readme")
    messages = await registry.get_prompt("docs", "summarize", {"style": "short"})

    assert contents[0].text == "contents of file:///readme"
    assert messages[0].content.text == 'prompt summarize {"style": "short"}'


@pytest.mark.asyncio
async def test_transport_failure_degrades_but_keeps_server() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    connector.latest("fs").fail_sends = True

    with pytest.raises(MCPTransportError):
        await registry.call_tool("fs", "read_file")

    summary = await registry.get("fs")
    assert summary is not None
    assert summary.status is ServerStatus.DEGRADED
    assert summary.last_error == "broken pipe"
    assert registry.generation() == 1

    await registry.reconnect_server("fs")
    summary = await registry.get("fs")
    assert summary is not None
    assert summary.status is ServerStatus.HEALTHY
    assert summary.last_error is None


@pytest.mark.asyncio
async def test_calls_to_one_server_are_serialized() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    transport = connector.latest("fs")
    transport.gate = asyncio.Event()

    calls = [
        asyncio.create_task(registry.call_tool("fs", "read_file", {"n": n})) for n in range(3)
    ]
    await transport.entered.wait()
    await asyncio.sleep(0.01)
    assert len(transport.method_calls("tools/call")) == 1

    transport.gate.set()
    await asyncio.gather(*calls)
    assert transport.max_in_flight == 1


@pytest.mark.asyncio
async def test_calls_to_different_servers_overlap() -> None:
    connector = FakeConnector({"a": FakeServer([["ta"]]), "b": FakeServer([["tb"]])})
    registry = _registry(connector)
    await registry.add_server("a", server_config())
    await registry.add_server("b", server_config())
    gate = asyncio.Event()
    connector.latest("a").gate = gate
    connector.latest("b").gate = gate

    first = asyncio.create_task(registry.call_tool("a", "ta"))
    second = asyncio.create_task(registry.call_tool("b", "tb"))
    await asyncio.wait_for(connector.latest("a").entered.wait(), timeout=1)
    await asyncio.wait_for(connector.latest("b").entered.wait(), timeout=1)

    gate.set()
    await asyncio.gather(first, second)


@pytest.mark.asyncio
async def test_slow_reconnect_does_not_block_other_servers() -> None:
    connector = FakeConnector({"a": FakeServer([["ta"]]), "b": FakeServer([["tb"]])})
    registry = _registry(connector)
    await registry.add_server("a", server_config())
    await registry.add_server("b", server_config())
    connector.gates["a"] = asyncio.Event()

    reconnect = asyncio.create_task(registry.reconnect_server("a"))
    await asyncio.sleep(0.01)
    assert not reconnect.done()

    result = await asyncio.wait_for(registry.call_tool("b", "tb"), timeout=1)
    assert result.text() == "tb:null"
    assert [s.name for s in await registry.list_servers()] == ["a", "b"]

    connector.gates["a"].set()
    await reconnect
    assert registry.generation() == 3


@pytest.mark.asyncio
async def test_denied_policy_has_no_side_effects() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector, policy=AutonomyPolicy(AutonomyLevel.READ_ONLY))

    with pytest.raises(MCPAuthorizationError) as excinfo:
        await registry.add_server("fs", server_config())

    assert excinfo.value.action == "add"
    assert connector.calls == []
    assert registry.generation() == 0
    assert await registry.server_count() == 0


@pytest.mark.asyncio
async def test_supervised_policy_allows_reconnect_only() -> None:
    connector = FakeConnector({"fs": FakeServer([["read_file"]])})
    registry = _registry(connector)
    await registry.add_server("fs", server_config())
    registry._policy = AutonomyPolicy(AutonomyLevel.SUPERVISED)

    with pytest.raises(MCPAuthorizationError):
        await registry.remove_server("fs")
    await registry.reconnect_server("fs")

    assert await registry.server_count() == 1
    assert registry.generation() == 2


@pytest.mark.asyncio
async def test_add_servers_collects_failures() -> None:
    connector = FakeConnector(
        {"fs": FakeServer([["read_file"]]), "fs2": FakeServer([["read_file"]])}
    )
    registry = _registry(connector)

    failures = await registry.add_servers(
        [
            ConfiguredServer(name="fs", config=server_config()),
            ConfiguredServer(name="fs2", config=server_config()),
        ]
    )

    assert list(failures) == ["fs2"]
    assert isinstance(failures["fs2"], MCPValidationError)
    assert await registry.server_count() == 1


@pytest.mark.asyncio
async def test_close_all_closes_every_client() -> None:
    connector = FakeConnector({"a": FakeServer([["ta"]]), "b": FakeServer([["tb"]])})
    registry = _registry(connector)
    await registry.add_server("a", server_config())
    await registry.add_server("b", server_config())

    await registry.close_all()
    await registry.close_all()

    assert connector.latest("a").close_calls == 1
    assert connector.latest("b").close_calls == 1
    assert await registry.server_count() == 0
    assert registry.generation() == 3


@pytest.mark.asyncio
async def test_list_tools_is_sorted_by_server() -> None:
    connector = FakeConnector({"zeta": FakeServer([["z1"]]), "alpha": FakeServer([["a1", "a2"]])})
    registry = _registry(connector)
    await registry.add_server("zeta", server_config())
    await registry.add_server("alpha", server_config())

    listed = [(entry.server, entry.tool.name) for entry in await registry.list_tools()]

    assert listed == [("alpha", "a1"), ("alpha", "a2"), ("zeta", "z1")]


@pytest.mark.asyncio
async def test_generation_cache_rebuilds_only_after_mutations() -> None:
    connector = FakeConnector({"a": FakeServer([["ta"]]), "b": FakeServer([["tb"]])})
    registry = _registry(connector)
    await registry.add_server("a", server_config())

    async def catalog(source: MCPRegistry) -> list[str]:
        return [entry.tool.name for entry in await source.list_tools()]

    cache = GenerationCache(registry, catalog)
    assert await cache.get() == ["ta"]
    assert await cache.get() == ["ta"]
    assert cache.builds == 1

    await registry.add_server("b", server_config())
    assert await cache.get() == ["ta", "tb"]
    assert cache.builds == 2

    with pytest.raises(MCPValidationError):
        await registry.add_server("a", server_config())
    await cache.get()
    assert cache.builds == 2
