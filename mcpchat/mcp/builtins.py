"""Built-in local tools, available without any MCP server."""

from pydantic import BaseModel, Field

from mcpchat.mcp.registry import ToolRegistry


class WeatherArgs(BaseModel):
    location: str = Field(
        default="an unspecified location",
        description="The city and state, e.g. San Francisco, CA",
    )


def get_current_weather(args: WeatherArgs) -> str:
    """Deterministic stand-in for a weather lookup."""
    return f"The weather in {args.location} is sunny and 75°F. (Dummy data)"


def register_builtins(registry: ToolRegistry) -> None:
    registry.register_function(
        name="getCurrentWeather",
        description="Get the current weather in a given location",
        args_model=WeatherArgs,
        handler=get_current_weather,
    )
