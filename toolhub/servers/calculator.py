"""
Calculator server — arithmetic and unit conversion.

Expressions are evaluated by walking the parsed AST, so only numbers,
arithmetic operators and the functions listed in FUNCTIONS are allowed.

    python -m toolhub.servers.calculator
"""

import ast
import math
import operator

from toolhub.server import StdioToolServer, ToolHandler

OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
FUNCTIONS = {
    name: getattr(math, name)
    for name in ("sqrt", "log", "log2", "log10", "exp", "sin", "cos", "tan", "floor", "ceil")
}
FUNCTIONS.update(abs=abs, round=round, min=min, max=max)
CONSTANTS = {"pi": math.pi, "e": math.e, "tau": math.tau, "inf": math.inf}

# unit → (dimension, factor to the dimension's base unit)
UNITS = {
    "mm": ("length", 0.001),
    "cm": ("length", 0.01),
    "m": ("length", 1.0),
    "km": ("length", 1000.0),
    "in": ("length", 0.0254),
    "ft": ("length", 0.3048),
    "mi": ("length", 1609.344),
    "miles": ("length", 1609.344),
    "g": ("mass", 0.001),
    "kg": ("mass", 1.0),
    "oz": ("mass", 0.028349523125),
    "lb": ("mass", 0.45359237),
    "ml": ("volume", 0.001),
    "l": ("volume", 1.0),
    "gal": ("volume", 3.785411784),
}
TEMPERATURES = {
    "celsius": (lambda v: v, lambda v: v),
    "fahrenheit": (lambda v: (v - 32) * 5 / 9, lambda v: v * 9 / 5 + 32),
    "kelvin": (lambda v: v - 273.15, lambda v: v + 273.15),
}


def evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return evaluate(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value
    if isinstance(node, ast.Name) and node.id in CONSTANTS:
        return CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in OPERATORS:
        return OPERATORS[type(node.op)](evaluate(node.left), evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in OPERATORS:
        return OPERATORS[type(node.op)](evaluate(node.operand))
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in FUNCTIONS
        and not node.keywords
    ):
        return FUNCTIONS[node.func.id](*map(evaluate, node.args))
    raise ValueError(f"Unsupported expression: {ast.unparse(node)}")


class CalculateTool(ToolHandler):
    name = "calculate"
    description = f"Evaluate an arithmetic expression. Functions: {', '.join(FUNCTIONS)}; constants: {', '.join(CONSTANTS)}."
    parameters = {
        "expression": {"type": "string", "description": "e.g. 'sqrt(2) * pi / 3'"},
    }
    required = ["expression"]

    def handle(self, params: dict) -> dict:
        expression = str(params.get("expression", "")).strip()
        if not expression:
            raise ValueError("No expression provided")
        return {"expression": expression, "result": evaluate(ast.parse(expression, mode="eval"))}


class ConvertUnitsTool(ToolHandler):
    name = "convert_units"
    description = "Convert a value between units of length, mass, volume or temperature."
    parameters = {
        "value": {"type": "number"},
        "from_unit": {"type": "string", "description": f"One of: {', '.join([*UNITS, *TEMPERATURES])}"},
        "to_unit": {"type": "string"},
    }
    required = ["value", "from_unit", "to_unit"]

    def handle(self, params: dict) -> dict:
        value = float(params.get("value", 0))
        source = str(params.get("from_unit", "")).lower()
        target = str(params.get("to_unit", "")).lower()
        return {"value": value, "from": source, "to": target, "result": self.convert(value, source, target)}

    @staticmethod
    def convert(value: float, source: str, target: str) -> float:
        if source in TEMPERATURES and target in TEMPERATURES:
            to_celsius, _ = TEMPERATURES[source]
            _, from_celsius = TEMPERATURES[target]
            return from_celsius(to_celsius(value))

        if source in UNITS and target in UNITS:
            source_dim, source_factor = UNITS[source]
            target_dim, target_factor = UNITS[target]
            if source_dim == target_dim:
                return value * source_factor / target_factor

        raise ValueError(f"Unknown conversion: {source} → {target}")


def build_server() -> StdioToolServer:
    server = StdioToolServer()
    server.register(CalculateTool())
    server.register(ConvertUnitsTool())
    return server


if __name__ == "__main__":
    build_server().run()
