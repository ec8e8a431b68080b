from agent_engine.tools.registry import (
    Tool,
    ToolExecutionContext,
    ToolParameter,
    ToolRegistration,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)


async def _echo(args: dict, context: ToolExecutionContext) -> ToolResult:
    return ToolResult(success=True, data=args)


def _registration(name: str, enabled: bool = True) -> ToolRegistration:
    schema = ToolSchema(
        name=name,
        description=f"{name} tool",
        parameters={
            "value": ToolParameter(type="string", description="Value to echo", required=True),
            "mode": ToolParameter(
                type="string", description="Echo mode", default="plain", enum=["plain", "upper"]
            ),
        },
    )
    return ToolRegistration(tool=Tool(schema=schema, handler=_echo), enabled=enabled)


def test_register_and_lookup() -> None:
    registry = ToolRegistry()
    registry.register("echo", _registration("echo"))

    assert registry.get("echo") is not None
    assert registry.is_available("echo")
    assert registry.get("missing") is None
    assert not registry.is_available("missing")


def test_register_overwrites_existing_name() -> None:
    registry = ToolRegistry()
    registry.register("echo", _registration("echo"))
    replacement = _registration("echo", enabled=False)

    registry.register("echo", replacement)

    assert registry.get("echo") is replacement
    assert registry.stats().total == 1


def test_disabled_tools_hidden_from_schemas_and_stats_counted() -> None:
    registry = ToolRegistry()
    registry.register("a", _registration("a"))
    registry.register("b", _registration("b"))
    registry.register("c", _registration("c"))

    assert registry.set_enabled("b", False) is True
    assert registry.set_enabled("missing", False) is False

    assert [schema.name for schema in registry.list_schemas()] == ["a", "c"]
    assert registry.names() == ["a", "b", "c"]
    stats = registry.stats()
    assert (stats.total, stats.enabled, stats.disabled) == (3, 2, 1)
    assert not registry.is_available("b")

    registry.set_enabled("b", True)
    assert registry.is_available("b")


def test_unregister() -> None:
    registry = ToolRegistry()
    registry.register("a", _registration("a"))
    registry.register("b", _registration("b"))

    assert registry.unregister("a") is True
    assert registry.unregister("a") is False
    assert registry.names() == ["b"]
    assert registry.get("a") is None
    assert registry.stats().total == 1


def test_schema_renders_json_schema() -> None:
    schema = _registration("echo").tool.schema

    rendered = schema.to_json_schema()

    assert rendered["type"] == "object"
    assert rendered["required"] == ["value"]
    assert rendered["properties"]["mode"] == {
        "type": "string",
        "description": "Echo mode",
        "enum": ["plain", "upper"],
        "default": "plain",
    }
    assert schema.to_wire()["parameters"]["value"]["required"] is True
