"""SQL files with 2-way comments.

An SQL file is plain SQL that runs as-is in any SQL console. Comments turn
it into a template:

- ``/*name*/'dummy'`` binds the ``name`` parameter in place of the dummy
  literal that follows the comment. A list or tuple value expands to
  ``(?, ?, ...)``, so ``IN /*ids*/(1, 2)`` works.
- ``/*IF expr*/ ... /*END*/`` keeps its body only when ``expr`` holds.
- ``/*BEGIN*/ ... /*END*/`` keeps its body only when something inside it was
  bound or an IF inside it held. A dangling ``AND``/``OR`` after ``WHERE`` is
  removed.

Conditions compare parameters with ``==``, ``!=``, ``<``, ``<=``, ``>``,
``>=``, test ``is null``/``is not null``, and combine with ``and``/``or``/
``not`` (``&&``, ``||`` and ``!`` also work). A bare name tests truthiness;
dotted names reach into nested mappings and attributes. Missing parameters
are None.

Example::

    SELECT * FROM customers
    /*BEGIN*/WHERE
      /*IF name != null*/name = /*name*/'Alice'/*END*/
      /*IF ids*/AND id IN /*ids*/(1, 2)/*END*/
    /*END*/
    ORDER BY id

Other comments, including ``--`` line comments, are dropped. Optimizer
hints (``/*+ ... */``) are kept.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fluentdb.dialect import Dialect
from fluentdb.exceptions import SqlTemplateError
from fluentdb.logging import get_logger
from fluentdb.query import CompiledStatement, compile_named

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")
_IF = re.compile(r"IF(?=[\s(])")
_DANGLING = re.compile(r"\bWHERE(\s+)(?:AND|OR)\b\s*", re.IGNORECASE)
_DUMMY_STOP = frozenset(",);")


# ========== Template nodes ==========


class _Output:
    """Rendered SQL plus whether any bind or IF contributed to it."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.values: dict[str, Any] = {}
        self.dynamic = False

    def text(self) -> str:
        return "".join(self.parts)


@dataclass(frozen=True)
class _Text:
    sql: str

    def render(self, params: Mapping[str, Any], out: _Output) -> None:
        out.parts.append(self.sql)


@dataclass(frozen=True)
class _Bind:
    name: str
    dummy: str

    def render(self, params: Mapping[str, Any], out: _Output) -> None:
        if self.name not in params:
            # unbound: the file runs with its dummy value
            out.parts.append(self.dummy)
            return
        value = params[self.name]
        out.dynamic = True
        if isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
            if not items:
                # IN (NULL) matches no rows
                out.parts.append("(NULL)")
                return
            markers = []
            for i, item in enumerate(items):
                key = f"{self.name}__{i}"
                out.values[key] = item
                markers.append(f":{key}")
            out.parts.append(f"({', '.join(markers)})")
            return
        out.values[self.name] = value
        out.parts.append(f":{self.name}")


@dataclass(frozen=True)
class _If:
    condition: str
    children: tuple[Any, ...]

    def render(self, params: Mapping[str, Any], out: _Output) -> None:
        if not evaluate(self.condition, params):
            return
        out.dynamic = True
        for child in self.children:
            child.render(params, out)


@dataclass(frozen=True)
class _Begin:
    children: tuple[Any, ...]

    def render(self, params: Mapping[str, Any], out: _Output) -> None:
        inner = _Output()
        for child in self.children:
            child.render(params, inner)
        if not inner.dynamic:
            return
        out.dynamic = True
        out.values.update(inner.values)
        out.parts.append(_DANGLING.sub(r"WHERE\1", inner.text()))


# ========== Parsing ==========


class _Parser:
    def __init__(self, sql: str, path: str | None) -> None:
        self.sql = sql
        self.path = path
        self.pos = 0

    def error(self, message: str) -> SqlTemplateError:
        line = self.sql.count("\n", 0, self.pos) + 1
        return SqlTemplateError(f"{message} (line {line})", path=self.path)

    def parse(self, in_block: bool = False) -> tuple[Any, ...]:
        sql, n = self.sql, len(self.sql)
        nodes: list[Any] = []
        text: list[str] = []

        def flush() -> None:
            if text:
                nodes.append(_Text("".join(text)))
                text.clear()

        while self.pos < n:
            ch = sql[self.pos]
            if ch == "'":
                end = self._literal_end(self.pos)
                text.append(sql[self.pos:end])
                self.pos = end
                continue
            if sql.startswith("--", self.pos):
                end = sql.find("\n", self.pos)
                self.pos = n if end == -1 else end
                continue
            if not sql.startswith("/*", self.pos):
                text.append(ch)
                self.pos += 1
                continue

            close = sql.find("*/", self.pos + 2)
            if close == -1:
                raise self.error("Unclosed comment")
            raw = sql[self.pos + 2:close]
            body = raw.strip()
            keyword = body.upper()
            if raw.startswith("+"):
                text.append(sql[self.pos:close + 2])
                self.pos = close + 2
                continue
            flush()
            self.pos = close + 2
            if keyword == "END":
                if not in_block:
                    raise self.error("/*END*/ without /*IF*/ or /*BEGIN*/")
                return tuple(nodes)
            if keyword == "BEGIN":
                nodes.append(_Begin(self.parse(in_block=True)))
            elif _IF.match(keyword):
                condition = body[2:].strip()
                if not condition:
                    raise self.error("/*IF*/ without a condition")
                nodes.append(_If(condition, self.parse(in_block=True)))
            elif keyword == "IF":
                raise self.error("/*IF*/ without a condition")
            elif _IDENTIFIER.match(body):
                nodes.append(_Bind(body, self._dummy()))
            elif not body:
                raise self.error("Empty comment")
            # anything else is a plain comment

        if in_block:
            raise self.error("Missing /*END*/")
        flush()
        return tuple(nodes)

    def _literal_end(self, start: int) -> int:
        sql, pos = self.sql, start + 1
        while pos < len(sql):
            if sql[pos] == "'":
                if sql.startswith("''", pos):
                    pos += 2
                    continue
                return pos + 1
            pos += 1
        return len(sql)

    def _dummy(self) -> str:
        """Consume the dummy value written right after a bind comment."""
        sql, start = self.sql, self.pos
        if start >= len(sql) or sql[start].isspace():
            return ""
        if sql[start] == "'":
            end = self._literal_end(start)
        elif sql[start] == "(":
            depth, end = 1, start + 1
            while end < len(sql) and depth:
                depth += {"(": 1, ")": -1}.get(sql[end], 0)
                end += 1
        else:
            end = start
            while end < len(sql) and not sql[end].isspace() and sql[end] not in _DUMMY_STOP:
                if sql.startswith("/*", end):
                    break
                end += 1
        self.pos = end
        return sql[start:end]


# ========== Conditions ==========

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|<>|>=|<=|&&|\|\||[()<>=!])
      | (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
    )""",
    re.VERBOSE,
)
_KEYWORDS = {"and", "or", "not", "is", "null", "true", "false"}

class _Condition:
    """Recursive-descent evaluator for IF expressions."""

    def __init__(self, expression: str, params: Mapping[str, Any]) -> None:
        self.expression = expression
        self.params = params
        self.tokens = self._tokenize(expression)
        self.pos = 0

    def _tokenize(self, expression: str) -> list[tuple[str, str]]:
        tokens: list[tuple[str, str]] = []
        pos = 0
        while pos < len(expression):
            if expression[pos:].strip() == "":
                break
            match = _TOKEN.match(expression, pos)
            if match is None:
                raise SqlTemplateError(f"Cannot parse condition {expression!r} at {expression[pos:].strip()!r}")
            kind = match.lastgroup
            assert kind is not None
            value = match.group(kind)
            if kind == "name" and value.lower() in _KEYWORDS:
                kind, value = "keyword", value.lower()
            elif kind == "op":
                value = {"&&": "and", "||": "or", "!": "not", "=": "==", "<>": "!="}.get(value, value)
                if value in ("and", "or", "not"):
                    kind = "keyword"
            tokens.append((kind, value))
            pos = match.end()
        return tokens

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, kind: str, value: str | None = None) -> bool:
        token = self._peek()
        if token is not None and token[0] == kind and (value is None or token[1] == value):
            self.pos += 1
            return True
        return False

    def _fail(self, message: str) -> SqlTemplateError:
        return SqlTemplateError(f"{message} in condition {self.expression!r}")

    def evaluate(self) -> bool:
        result = self._or()
        token = self._peek()
        if token is not None:
            raise self._fail(f"Unexpected {token[1]!r}")
        return result

    def _or(self) -> bool:
        result = self._and()
        while self._accept("keyword", "or"):
            right = self._and()
            result = result or right
        return result

    def _and(self) -> bool:
        result = self._not()
        while self._accept("keyword", "and"):
            right = self._not()
            result = result and right
        return result

    def _not(self) -> bool:
        if self._accept("keyword", "not"):
            return not self._not()
        return self._comparison()

    def _comparison(self) -> bool:
        if self._accept("op", "("):
            result = self._or()
            if not self._accept("op", ")"):
                raise self._fail("Missing ')'")
            return result
        left = self._operand()
        if self._accept("keyword", "is"):
            negate = self._accept("keyword", "not")
            if not self._accept("keyword", "null"):
                raise self._fail("Expected NULL after IS")
            return (left is not None) if negate else (left is None)
        token = self._peek()
        if token is None or token[0] != "op" or token[1] in ("(", ")"):
            return bool(left)
        self.pos += 1
        right = self._operand()
        return self._compare(token[1], left, right)

    def _operand(self) -> Any:
        token = self._peek()
        if token is None:
            raise self._fail("Missing operand")
        self.pos += 1
        kind, value = token
        if kind == "string":
            return value[1:-1].replace("''", "'")
        if kind == "number":
            return float(value) if "." in value else int(value)
        if kind == "keyword" and value in ("null", "true", "false"):
            return {"null": None, "true": True, "false": False}[value]
        if kind == "name":
            return _lookup(self.params, value)
        raise self._fail(f"Unexpected {value!r}")

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        # ordering against a missing value never holds
        if left is None or right is None:
            return False
        try:
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            if op == ">=":
                return left >= right
        except TypeError as e:
            raise self._fail(f"Cannot compare {type(left).__name__} with {type(right).__name__}") from e
        raise self._fail(f"Unsupported operator {op!r}")


def _lookup(params: Mapping[str, Any], name: str) -> Any:
    head, *rest = name.split(".")
    value = params.get(head)
    for part in rest:
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def evaluate(expression: str, params: Mapping[str, Any]) -> bool:
    """Evaluate an IF condition against ``params``.

    Raises:
        SqlTemplateError: The expression cannot be parsed
    """
    return _Condition(expression, params).evaluate()


# ========== Templates ==========


@dataclass(frozen=True)
class SqlTemplate:
    """A parsed SQL file, ready to render with different parameters."""

    source: str
    nodes: tuple[Any, ...]
    path: str | None = None

    @classmethod
    def parse(cls, sql: str, path: str | None = None) -> SqlTemplate:
        """Parse template text.

        Raises:
            SqlTemplateError: Unbalanced ``/*END*/`` or malformed comments
        """
        return cls(sql, _Parser(sql, path).parse(), path)

    def render(self, params: Mapping[str, Any] | None = None) -> tuple[str, dict[str, Any]]:
        """Render to SQL with ``:name`` markers and the values they bind."""
        params = params or {}
        out = _Output()
        for node in self.nodes:
            node.render(params, out)
        sql = out.text().strip()
        if sql.endswith(";"):
            sql = sql[:-1].rstrip()
        return sql, out.values

    def compile(self, params: Mapping[str, Any] | None = None, dialect: str | Dialect = "sqlite") -> CompiledStatement:
        """Render and rewrite markers into the dialect's placeholders."""
        sql, values = self.render(params)
        # plain :name markers in the file bind straight from params
        merged = {**(params or {}), **values}
        try:
            return compile_named(sql, merged, dialect)
        except KeyError as e:
            raise SqlTemplateError(str(e.args[0]), path=self.path) from e


class SqlFileLoader:
    """Loads and caches SQL templates from disk.

    Relative paths resolve against ``base_dir`` (the working directory when
    None). A cached template is re-read when its file changes.
    """

    def __init__(self, base_dir: Path | str | None = None, encoding: str = "utf-8") -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.encoding = encoding
        self._cache: dict[Path, tuple[int, SqlTemplate]] = {}

    def resolve(self, path: Path | str) -> Path:
        path = Path(path)
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path.resolve()

    def load(self, path: Path | str) -> SqlTemplate:
        """Return the parsed template for ``path``.

        Raises:
            FileNotFoundError: If the file doesn't exist
            SqlTemplateError: If the file is not a valid template
        """
        resolved = self.resolve(path)
        if not resolved.is_file():
            raise FileNotFoundError(f"SQL file not found: {resolved}")
        mtime = resolved.stat().st_mtime_ns
        cached = self._cache.get(resolved)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        template = SqlTemplate.parse(resolved.read_text(encoding=self.encoding), str(resolved))
        self._cache[resolved] = (mtime, template)
        logger.debug("sqlfile.load", path=str(resolved))
        return template

    def clear(self) -> None:
        self._cache.clear()


__all__ = ["SqlTemplate", "SqlFileLoader", "evaluate"]
