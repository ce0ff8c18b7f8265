"""Shared test helpers: an in-process math Specialist."""

import asyncio

from capability_bridge.loopback import SpecialistHost

MATH_ADDRESS = "http://math.local"

NUMBER_PAIR_SCHEMA = {
    "type": "object",
    "properties": {
        "a": {"type": "number"},
        "b": {"type": "number"},
    },
    "required": ["a", "b"],
}


def build_math_host() -> SpecialistHost:
    host = SpecialistHost("math-specialist", description="Arithmetic skills", version="1.0.0")

    @host.skill(
        "multiply_numbers",
        description="Multiply two numbers",
        input_schema=NUMBER_PAIR_SCHEMA,
        output_schema={"type": "number"},
    )
    def multiply(a: float, b: float) -> float:
        return a * b

    @host.skill("add", description="Add two numbers", input_schema=NUMBER_PAIR_SCHEMA)
    async def add(a: float, b: float) -> float:
        await asyncio.sleep(0)
        return a + b

    return host
