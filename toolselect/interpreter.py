import ast
import asyncio
import inspect
import operator
import time
from typing import Any, Dict, Iterable, List, Optional

from .errors import LineTimeout, SandboxViolation


SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
    ast.BitOr: operator.or_,
    ast.BitAnd: operator.and_,
}
SAFE_AUG_OPS = {
    ast.Add: operator.iadd,
    ast.Sub: operator.isub,
    ast.Mult: operator.imul,
    ast.Div: operator.itruediv,
    ast.Mod: operator.imod,
    ast.Pow: operator.ipow,
    ast.FloorDiv: operator.ifloordiv,
    ast.BitOr: operator.ior,
    ast.BitAnd: operator.iand,
}
SAFE_UNARY_OPS = {ast.UAdd: lambda v: +v, ast.USub: lambda v: -v, ast.Not: lambda v: not v}
SAFE_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}
SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
}
# Methods are only reachable on plain data values.
SAFE_ATTR_TYPES = (str, list, dict, set, frozenset, tuple, int, float)
BLOCKED_ATTRS = frozenset({"format", "format_map"})
SAFE_CONSTANT_TYPES = (int, float, bool, str, type(None))
SIZED_SEQUENCE_TYPES = (str, list, tuple)
YIELD_EVERY = 100
# Builtin calls and arithmetic run without yielding, so their result size is
# capped up front instead of relying on the line deadline.
MAX_SEQUENCE_LENGTH = 1_000_000
MAX_INT_BITS = 100_000
METHOD_SIZE_ARGS = frozenset({"center", "ljust", "rjust", "zfill", "expandtabs"})


def _is_int(value: Any) -> bool:
    return isinstance(value, int)


def guard_operands(op_type: type, left: Any, right: Any) -> None:
    """Reject arithmetic whose result would be too large to build in one go."""
    if op_type is ast.Pow:
        if _is_int(left) and _is_int(right) and right > 0 and abs(left) > 1:
            if abs(left).bit_length() * right > MAX_INT_BITS:
                raise SandboxViolation(
                    f"Power result would exceed {MAX_INT_BITS} bits",
                    {"max_int_bits": MAX_INT_BITS},
                )
        return
    if op_type is ast.Mult:
        if _is_int(left) and _is_int(right):
            if left.bit_length() + right.bit_length() > MAX_INT_BITS:
                raise SandboxViolation(
                    f"Product would exceed {MAX_INT_BITS} bits",
                    {"max_int_bits": MAX_INT_BITS},
                )
            return
        seq, count = (left, right) if isinstance(left, SIZED_SEQUENCE_TYPES) else (right, left)
        if isinstance(seq, SIZED_SEQUENCE_TYPES) and _is_int(count) and len(seq) * count > MAX_SEQUENCE_LENGTH:
            raise SandboxViolation(
                f"Repetition would exceed {MAX_SEQUENCE_LENGTH} items",
                {"max_sequence_length": MAX_SEQUENCE_LENGTH},
            )
        return
    if op_type is ast.Add:
        if isinstance(left, SIZED_SEQUENCE_TYPES) and isinstance(right, SIZED_SEQUENCE_TYPES):
            if len(left) + len(right) > MAX_SEQUENCE_LENGTH:
                raise SandboxViolation(
                    f"Concatenation would exceed {MAX_SEQUENCE_LENGTH} items",
                    {"max_sequence_length": MAX_SEQUENCE_LENGTH},
                )


class _BreakLoop(Exception):
    pass


class _ContinueLoop(Exception):
    pass


def parse_line(code: str) -> ast.Module:
    """Parse one line of model code; top-level await is allowed."""
    return compile(code, "<line>", "exec", flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)


class RunScope:
    """Variable bindings shared by every line of one run."""

    def __init__(self, reserved: Iterable[str] = ()):
        self.bindings: Dict[str, Any] = {}
        self.reserved = frozenset(reserved)

    def __contains__(self, name: str) -> bool:
        return name in self.bindings

    def get(self, name: str, default: Any = None) -> Any:
        return self.bindings.get(name, default)

    def bind(self, name: str, value: Any) -> None:
        if name in self.reserved:
            raise SandboxViolation(f"'{name}' is a built-in name and cannot be reassigned")
        if name.startswith("__"):
            raise SandboxViolation(f"Name '{name}' is not allowed")
        self.bindings[name] = value

    def unbind(self, name: str) -> None:
        if name not in self.bindings:
            raise NameError(f"name '{name}' is not defined")
        del self.bindings[name]

    def names(self) -> List[str]:
        return sorted(self.bindings)


class Interpreter:
    """
    Async tree-walking interpreter for the small Python subset model code uses.

    Statements write straight into the RunScope once their right-hand side has
    fully resolved, awaited operations included, so a binding made in one line
    is visible to every later line of the run. Calls that return awaitables are
    awaited in place whether or not the code spelled out ``await``.

    Loops are iteration-capped and check the line deadline cooperatively, and
    yield to the event loop every few iterations so liveness pings still get
    answered while a long loop runs. A single builtin call cannot be
    interrupted, so ``range`` is capped at the loop limit and arithmetic is
    size-checked before it runs.
    """

    def __init__(self, scope: RunScope, names: Dict[str, Any], *, max_loop_iterations: int = 10000):
        self.scope = scope
        self.names = names
        self.max_loop_iterations = max(1, int(max_loop_iterations))
        self._deadline: Optional[float] = None
        self._timeout_s: Optional[float] = None
        self._ticks = 0

    async def run(self, code: str, timeout_s: Optional[float] = None) -> Any:
        tree = parse_line(code)
        self._timeout_s = timeout_s
        self._deadline = time.monotonic() + timeout_s if timeout_s else None
        self._ticks = 0
        last_value: Any = None
        try:
            for stmt in tree.body:
                last_value = await self._exec(stmt)
        except (_BreakLoop, _ContinueLoop):
            raise SandboxViolation("'break' or 'continue' used outside a loop")
        finally:
            self._deadline = None
        return last_value

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise LineTimeout(
                f"Line execution timed out after {self._timeout_s:g}s",
                {"timeout_s": self._timeout_s},
            )

    async def _tick(self) -> None:
        self._ticks += 1
        if self._ticks > self.max_loop_iterations:
            raise SandboxViolation(
                f"Loop exceeded {self.max_loop_iterations} iterations in one line",
                {"max_loop_iterations": self.max_loop_iterations},
            )
        self._check_deadline()
        if self._ticks % YIELD_EVERY == 0:
            await asyncio.sleep(0)

    def _bounded_range(self, *args: Any) -> range:
        values = range(*args)
        try:
            size = len(values)
        except OverflowError:
            size = self.max_loop_iterations + 1
        if size > self.max_loop_iterations:
            raise SandboxViolation(
                f"range() longer than {self.max_loop_iterations} items is not allowed",
                {"max_loop_iterations": self.max_loop_iterations},
            )
        return values

    async def _run_block(self, body: List[ast.stmt]) -> None:
        for stmt in body:
            await self._exec(stmt)

    async def _exec(self, stmt: ast.stmt) -> Any:
        self._check_deadline()
        if isinstance(stmt, ast.Expr):
            return await self._eval(stmt.value)
        if isinstance(stmt, ast.Assign):
            value = await self._eval(stmt.value)
            for target in stmt.targets:
                await self._assign(target, value)
            return None
        if isinstance(stmt, ast.AnnAssign):
            if stmt.value is not None:
                await self._assign(stmt.target, await self._eval(stmt.value))
            return None
        if isinstance(stmt, ast.AugAssign):
            op = SAFE_AUG_OPS.get(type(stmt.op))
            if op is None:
                raise SandboxViolation(f"Operator {type(stmt.op).__name__} is not allowed")
            current = await self._eval(stmt.target)
            value = await self._eval(stmt.value)
            guard_operands(type(stmt.op), current, value)
            await self._assign(stmt.target, op(current, value))
            return None
        if isinstance(stmt, ast.If):
            if await self._eval(stmt.test):
                await self._run_block(stmt.body)
            else:
                await self._run_block(stmt.orelse)
            return None
        if isinstance(stmt, ast.For):
            iterable = await self._eval(stmt.iter)
            broke = False
            for item in iterable:
                await self._tick()
                await self._assign(stmt.target, item)
                try:
                    await self._run_block(stmt.body)
                except _BreakLoop:
                    broke = True
                    break
                except _ContinueLoop:
                    continue
            if not broke:
                await self._run_block(stmt.orelse)
            return None
        if isinstance(stmt, ast.While):
            broke = False
            while await self._eval(stmt.test):
                await self._tick()
                try:
                    await self._run_block(stmt.body)
                except _BreakLoop:
                    broke = True
                    break
                except _ContinueLoop:
                    continue
            if not broke:
                await self._run_block(stmt.orelse)
            return None
        if isinstance(stmt, ast.Pass):
            return None
        if isinstance(stmt, ast.Break):
            raise _BreakLoop()
        if isinstance(stmt, ast.Continue):
            raise _ContinueLoop()
        if isinstance(stmt, ast.Delete):
            for target in stmt.targets:
                if not isinstance(target, ast.Name):
                    raise SandboxViolation("Only plain names can be deleted")
                self.scope.unbind(target.id)
            return None
        if isinstance(stmt, (ast.Import, ast.ImportFrom)):
            raise SandboxViolation("Imports are not allowed; only the provided operations are available")
        raise SandboxViolation(f"{type(stmt).__name__} statements are not allowed")

    async def _assign(self, target: ast.AST, value: Any, env: Optional[Dict[str, Any]] = None) -> None:
        if isinstance(target, ast.Name):
            if env is not None:
                env[target.id] = value
            else:
                self.scope.bind(target.id, value)
            return
        if isinstance(target, (ast.Tuple, ast.List)):
            await self._unpack(target.elts, value, env)
            return
        if isinstance(target, ast.Subscript):
            container = await self._eval(target.value, env)
            if not isinstance(container, (list, dict)):
                raise SandboxViolation("Item assignment is only supported on lists and dicts")
            container[await self._eval_index(target.slice, env)] = value
            return
        if isinstance(target, ast.Attribute):
            raise SandboxViolation("Attribute assignment is not allowed")
        raise SandboxViolation(f"Unsupported assignment target {type(target).__name__}")

    async def _unpack(self, targets: List[ast.expr], value: Any, env: Optional[Dict[str, Any]]) -> None:
        items = list(value)
        starred = [idx for idx, elt in enumerate(targets) if isinstance(elt, ast.Starred)]
        if len(starred) > 1:
            raise SandboxViolation("Multiple starred expressions in assignment")
        if not starred:
            if len(items) != len(targets):
                raise ValueError(f"expected {len(targets)} values to unpack, got {len(items)}")
            for elt, item in zip(targets, items):
                await self._assign(elt, item, env)
            return
        star = starred[0]
        after = len(targets) - star - 1
        if len(items) < star + after:
            raise ValueError(f"expected at least {star + after} values to unpack, got {len(items)}")
        for elt, item in zip(targets[:star], items[:star]):
            await self._assign(elt, item, env)
        rest_end = len(items) - after
        await self._assign(targets[star].value, items[star:rest_end], env)
        for elt, item in zip(targets[star + 1:], items[rest_end:]):
            await self._assign(elt, item, env)

    def _lookup(self, name: str, env: Optional[Dict[str, Any]]) -> Any:
        if env is not None and name in env:
            return env[name]
        if name in self.scope:
            return self.scope.get(name)
        if name in self.names:
            return self.names[name]
        raise NameError(f"name '{name}' is not defined")

    def _get_attribute(self, obj: Any, attr: str) -> Any:
        if attr.startswith("_") or attr in BLOCKED_ATTRS:
            raise SandboxViolation(f"Access to attribute '{attr}' is not allowed")
        if not isinstance(obj, SAFE_ATTR_TYPES):
            raise SandboxViolation(f"Attribute access is not allowed on {type(obj).__name__} values")
        return getattr(obj, attr)

    async def _eval_elements(self, nodes: List[ast.expr], env: Optional[Dict[str, Any]]) -> List[Any]:
        values: List[Any] = []
        for elt in nodes:
            if isinstance(elt, ast.Starred):
                values.extend(await self._eval(elt.value, env))
            else:
                values.append(await self._eval(elt, env))
        return values

    async def _eval_index(self, node: ast.AST, env: Optional[Dict[str, Any]]) -> Any:
        if isinstance(node, ast.Slice):
            lower = await self._eval(node.lower, env) if node.lower else None
            upper = await self._eval(node.upper, env) if node.upper else None
            step = await self._eval(node.step, env) if node.step else None
            return slice(lower, upper, step)
        if isinstance(node, ast.Tuple):
            return tuple([await self._eval_index(elt, env) for elt in node.elts])
        return await self._eval(node, env)

    async def _eval_comprehension(self, node: ast.AST, env: Optional[Dict[str, Any]]) -> Any:
        if isinstance(node, (ast.ListComp, ast.GeneratorExp)):
            results: Any = []
        elif isinstance(node, ast.SetComp):
            results = set()
        else:
            results = {}

        async def _walk(gen_index: int, local_env: Dict[str, Any]) -> None:
            if gen_index >= len(node.generators):
                if isinstance(node, ast.DictComp):
                    results[await self._eval(node.key, local_env)] = await self._eval(node.value, local_env)
                elif isinstance(results, set):
                    results.add(await self._eval(node.elt, local_env))
                else:
                    results.append(await self._eval(node.elt, local_env))
                return
            gen = node.generators[gen_index]
            iterable = await self._eval(gen.iter, local_env)
            for item in iterable:
                await self._tick()
                next_env = dict(local_env)
                await self._assign(gen.target, item, next_env)
                keep = True
                for cond in gen.ifs:
                    if not await self._eval(cond, next_env):
                        keep = False
                        break
                if keep:
                    await _walk(gen_index + 1, next_env)

        await _walk(0, dict(env or {}))
        return results

    async def _eval_call(self, node: ast.Call, env: Optional[Dict[str, Any]]) -> Any:
        method = None
        if isinstance(node.func, ast.Attribute):
            method = node.func.attr
            func = self._get_attribute(await self._eval(node.func.value, env), method)
        else:
            func = await self._eval(node.func, env)
        if not callable(func):
            raise TypeError(f"'{type(func).__name__}' object is not callable")
        args = await self._eval_elements(node.args, env)
        kwargs: Dict[str, Any] = {}
        for kw in node.keywords:
            if kw.arg is None:
                extra = await self._eval(kw.value, env)
                if not isinstance(extra, dict):
                    raise TypeError("argument after ** must be a mapping")
                kwargs.update(extra)
            else:
                kwargs[kw.arg] = await self._eval(kw.value, env)
        self._check_deadline()
        if func is range:
            return self._bounded_range(*args, **kwargs)
        if method in METHOD_SIZE_ARGS and any(_is_int(a) and a > MAX_SEQUENCE_LENGTH for a in args):
            raise SandboxViolation(
                f"'{method}' width exceeds {MAX_SEQUENCE_LENGTH}",
                {"max_sequence_length": MAX_SEQUENCE_LENGTH},
            )
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _eval(self, node: ast.AST, env: Optional[Dict[str, Any]] = None) -> Any:
        if isinstance(node, ast.Constant):
            if isinstance(node.value, SAFE_CONSTANT_TYPES):
                return node.value
            raise SandboxViolation("Unsupported literal")
        if isinstance(node, ast.Name):
            return self._lookup(node.id, env)
        if isinstance(node, ast.Await):
            value = await self._eval(node.value, env)
            if inspect.isawaitable(value):
                value = await value
            return value
        if isinstance(node, ast.Call):
            return await self._eval_call(node, env)
        if isinstance(node, ast.Attribute):
            return self._get_attribute(await self._eval(node.value, env), node.attr)
        if isinstance(node, ast.List):
            return await self._eval_elements(node.elts, env)
        if isinstance(node, ast.Tuple):
            return tuple(await self._eval_elements(node.elts, env))
        if isinstance(node, ast.Set):
            return set(await self._eval_elements(node.elts, env))
        if isinstance(node, ast.Dict):
            result: Dict[Any, Any] = {}
            for key_node, value_node in zip(node.keys, node.values):
                if key_node is None:
                    extra = await self._eval(value_node, env)
                    if not isinstance(extra, dict):
                        raise TypeError("'**' in a dict literal requires a mapping")
                    result.update(extra)
                else:
                    result[await self._eval(key_node, env)] = await self._eval(value_node, env)
            return result
        if isinstance(node, (ast.ListComp, ast.GeneratorExp, ast.SetComp, ast.DictComp)):
            return await self._eval_comprehension(node, env)
        if isinstance(node, ast.Subscript):
            target = await self._eval(node.value, env)
            return target[await self._eval_index(node.slice, env)]
        if isinstance(node, ast.JoinedStr):
            parts: List[str] = []
            for value in node.values:
                if isinstance(value, ast.Constant):
                    parts.append(str(value.value))
                    continue
                if not isinstance(value, ast.FormattedValue):
                    raise SandboxViolation("Unsupported f-string part")
                inner = await self._eval(value.value, env)
                if value.conversion == ord("r"):
                    inner = repr(inner)
                elif value.conversion == ord("a"):
                    inner = ascii(inner)
                elif value.conversion == ord("s"):
                    inner = str(inner)
                spec = await self._eval(value.format_spec, env) if value.format_spec is not None else ""
                parts.append(format(inner, spec))
            return "".join(parts)
        if isinstance(node, ast.Compare):
            left = await self._eval(node.left, env)
            for op, comparator in zip(node.ops, node.comparators):
                compare = SAFE_COMPARE_OPS.get(type(op))
                if compare is None:
                    raise SandboxViolation("Comparison not allowed")
                right = await self._eval(comparator, env)
                if not compare(left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.BoolOp):
            value: Any = None
            if isinstance(node.op, ast.And):
                for operand in node.values:
                    value = await self._eval(operand, env)
                    if not value:
                        return value
                return value
            for operand in node.values:
                value = await self._eval(operand, env)
                if value:
                    return value
            return value
        if isinstance(node, ast.IfExp):
            if await self._eval(node.test, env):
                return await self._eval(node.body, env)
            return await self._eval(node.orelse, env)
        if isinstance(node, ast.BinOp):
            op = SAFE_BIN_OPS.get(type(node.op))
            if op is None:
                raise SandboxViolation(f"Operator {type(node.op).__name__} is not allowed")
            left = await self._eval(node.left, env)
            right = await self._eval(node.right, env)
            guard_operands(type(node.op), left, right)
            return op(left, right)
        if isinstance(node, ast.UnaryOp):
            unary = SAFE_UNARY_OPS.get(type(node.op))
            if unary is None:
                raise SandboxViolation(f"Operator {type(node.op).__name__} is not allowed")
            return unary(await self._eval(node.operand, env))
        if isinstance(node, ast.NamedExpr):
            value = await self._eval(node.value, env)
            await self._assign(node.target, value)
            return value
        if isinstance(node, ast.Lambda):
            raise SandboxViolation("lambda is not supported; use a comprehension instead")
        raise SandboxViolation(f"{type(node).__name__} expressions are not allowed")
