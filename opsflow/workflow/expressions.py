"""
Template and expression compiler for {{...}} placeholders.

A template is parsed once into a small AST (Text, Output, IfBlock) and then
rendered against a run environment as many times as needed:

    "Hello {{payload.name}}"                 -> Text + Output(Path)
    "{{formatDate(addDays(now, 3))}}"        -> Output(Call(Call(Path)))
    "{{#if paymentUrl}}Pay{{else}}-{{/if}}"  -> IfBlock

Bare expressions (Condition fields, Loop data sources) compile through
`compile_expression`, which accepts the same grammar without the braces.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..errors import TemplateSyntaxError, UnresolvedVariableError
from .helpers import HELPERS

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>-?\d+(?:\.\d+)?)"
    r"|(?P<string>'[^']*'|\"[^\"]*\")"
    r"|(?P<name>[A-Za-z_$][\w$]*(?:\.[\w$]+|\[\d+\])*)"
    r"|(?P<punct>[(),])"
    r")"
)
_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}


class _Missing:
    """ Sentinel for a path that does not resolve. """

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


# -------------------------
# AST
# -------------------------

@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class Path:
    parts: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.parts)

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        value = lookup(env, self.parts)
        if value is MISSING and len(self.parts) == 1 and self.parts[0] in HELPERS:
            # zero-argument helpers may be written bare: {{now}}
            return _call_helper(self.parts[0], ())
        return value


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...] = ()

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        values = tuple(arg.evaluate(env) for arg in self.args)
        if any(v is MISSING for v in values):
            return MISSING
        return _call_helper(self.name, values)


Expression = Union[Literal, Path, Call]


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Output:
    expression: Expression


@dataclass(frozen=True)
class IfBlock:
    condition: Expression
    body: Tuple[Any, ...] = ()
    orelse: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Template:
    source: str
    nodes: Tuple[Any, ...] = field(default_factory=tuple)

    @property
    def is_single_expression(self) -> bool:
        return len(self.nodes) == 1 and isinstance(self.nodes[0], Output)

    @property
    def is_static(self) -> bool:
        return all(isinstance(n, Text) for n in self.nodes)

    def render(self, env: Mapping[str, Any]) -> str:
        """ Render to text. Unresolved references become empty strings. """
        out: List[str] = []
        _render_nodes(self.nodes, env, out)
        return "".join(out)

    def evaluate(self, env: Mapping[str, Any]) -> Any:
        """
        Like render, but a template that is exactly one {{expression}}
        keeps the native value (list, number, datetime...). Unresolved -> None.
        """
        if self.is_single_expression:
            value = self.nodes[0].expression.evaluate(env)
            return None if value is MISSING else value
        return self.render(env)

    def evaluate_strict(self, env: Mapping[str, Any], node_id: Optional[str] = None) -> Any:
        """ Evaluate, raising UnresolvedVariableError if any referenced value is missing. """
        for expression in _expressions(self.nodes):
            if expression.evaluate(env) is MISSING:
                raise UnresolvedVariableError(_describe(expression), node_id)
        return self.evaluate(env)


# -------------------------
# LOOKUP / HELPERS
# -------------------------

def split_path(dotted: str) -> Tuple[str, ...]:
    parts: List[str] = []
    for piece in dotted.split("."):
        while "[" in piece:
            head, _, rest = piece.partition("[")
            index, _, piece = rest.partition("]")
            if head:
                parts.append(head)
            parts.append(index)
        if piece:
            parts.append(piece)
    return tuple(parts)


def lookup(env: Mapping[str, Any], parts: Tuple[str, ...]) -> Any:
    """ Walk a dotted path through mappings, sequences and `.length`. """
    current: Any = env
    for part in parts:
        if isinstance(current, Mapping):
            if part in current:
                current = current[part]
                continue
            if part == "length":
                current = len(current)
                continue
            return MISSING
        if isinstance(current, (list, tuple, str)):
            if part == "length":
                current = len(current)
                continue
            if part.isdigit() and not isinstance(current, str) and int(part) < len(current):
                current = current[int(part)]
                continue
            return MISSING
        return MISSING
    return current


def _call_helper(name: str, args: Tuple[Any, ...]) -> Any:
    try:
        return HELPERS[name](*args)
    except (ValueError, TypeError, ArithmeticError, OverflowError) as e:
        logger.debug("Helper %s%r failed: %s", name, args, e)
        return MISSING


def _describe(expression: Expression) -> str:
    if isinstance(expression, Path):
        return expression.dotted
    if isinstance(expression, Call):
        return f"{expression.name}({', '.join(_describe(a) for a in expression.args)})"
    return repr(expression.value)


def _expressions(nodes) -> List[Expression]:
    found: List[Expression] = []
    for node in nodes:
        if isinstance(node, Output):
            found.append(node.expression)
        elif isinstance(node, IfBlock):
            found.append(node.condition)
            found.extend(_expressions(node.body))
            found.extend(_expressions(node.orelse))
    return found


def _stringify(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def is_truthy(value: Any) -> bool:
    if isinstance(value, (list, tuple, dict, str)):
        return len(value) > 0
    return bool(value) and value is not MISSING


def _render_nodes(nodes, env, out: List[str]) -> None:
    for node in nodes:
        if isinstance(node, Text):
            out.append(node.text)
        elif isinstance(node, Output):
            out.append(_stringify(node.expression.evaluate(env)))
        elif isinstance(node, IfBlock):
            branch = node.body if is_truthy(node.condition.evaluate(env)) else node.orelse
            _render_nodes(branch, env, out)


# -------------------------
# PARSING
# -------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match or match.end() == pos:
            raise TemplateSyntaxError(f"Unexpected character at {pos} in expression: {text!r}", text)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _ExpressionParser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def parse(self) -> Expression:
        if not self.tokens:
            raise TemplateSyntaxError("Empty expression", self.text)
        expression = self._expression()
        if self.pos != len(self.tokens):
            raise TemplateSyntaxError(f"Unexpected trailing input in expression: {self.text!r}", self.text)
        return expression

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: Optional[str] = None) -> Tuple[str, str]:
        token = self._peek()
        if token is None or (value is not None and token[1] != value):
            raise TemplateSyntaxError(f"Expected {value or 'a value'} in expression: {self.text!r}", self.text)
        self.pos += 1
        return token

    def _expression(self) -> Expression:
        kind, value = self._take()
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value[1:-1])
        if kind != "name":
            raise TemplateSyntaxError(f"Unexpected {value!r} in expression: {self.text!r}", self.text)

        nxt = self._peek()
        if nxt and nxt[1] == "(":
            if value not in HELPERS:
                raise TemplateSyntaxError(f"Unknown helper function: {value}", self.text)
            self._take("(")
            args: List[Expression] = []
            if self._peek() and self._peek()[1] != ")":
                args.append(self._expression())
                while self._peek() and self._peek()[1] == ",":
                    self._take(",")
                    args.append(self._expression())
            self._take(")")
            return Call(value, tuple(args))
        if value in _LITERALS:
            return Literal(_LITERALS[value])
        return Path(split_path(value))


def compile_expression(text: str) -> Expression:
    """ Compile a bare expression; a single {{...}} wrapper is tolerated. """
    stripped = text.strip()
    match = TAG_PATTERN.fullmatch(stripped)
    if match:
        stripped = match.group(1)
    return _ExpressionParser(stripped).parse()


def compile_template(source: str) -> Template:
    root: List[Any] = []
    # stack of (condition, body, orelse, in_else)
    stack: List[list] = []

    def current() -> List[Any]:
        if not stack:
            return root
        frame = stack[-1]
        return frame[2] if frame[3] else frame[1]

    pos = 0
    for match in TAG_PATTERN.finditer(source):
        if match.start() > pos:
            current().append(Text(source[pos:match.start()]))
        pos = match.end()
        tag = match.group(1).strip()

        if tag.startswith("#if"):
            condition = tag[3:].strip()
            if not condition:
                raise TemplateSyntaxError("{{#if}} requires a condition", source)
            stack.append([compile_expression(condition), [], [], False])
        elif tag == "else":
            if not stack or stack[-1][3]:
                raise TemplateSyntaxError("{{else}} outside of an {{#if}} block", source)
            stack[-1][3] = True
        elif tag == "/if":
            if not stack:
                raise TemplateSyntaxError("{{/if}} without a matching {{#if}}", source)
            condition, body, orelse, _ = stack.pop()
            current().append(IfBlock(condition, tuple(body), tuple(orelse)))
        else:
            current().append(Output(compile_expression(tag)))

    if stack:
        raise TemplateSyntaxError("Unclosed {{#if}} block", source)
    if pos < len(source):
        root.append(Text(source[pos:]))
    return Template(source, tuple(root))


def has_placeholders(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value


class TemplateCache:
    """ Compiled templates and expressions keyed by their source text. """

    def __init__(self):
        self._templates: Dict[str, Template] = {}
        self._expressions: Dict[str, Expression] = {}

    def template(self, source: str) -> Template:
        template = self._templates.get(source)
        if template is None:
            template = self._templates[source] = compile_template(source)
        return template

    def expression(self, source: str) -> Expression:
        expression = self._expressions.get(source)
        if expression is None:
            expression = self._expressions[source] = compile_expression(source)
        return expression

    def warm(self, value: Any) -> None:
        """ Compile every template found in a (nested) configuration value. """
        if has_placeholders(value):
            self.template(value)
        elif isinstance(value, Mapping):
            for item in value.values():
                self.warm(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                self.warm(item)

    def __len__(self) -> int:
        return len(self._templates) + len(self._expressions)


def resolve_value(value: Any, env: Mapping[str, Any], cache: Optional[TemplateCache] = None) -> Any:
    """ Resolve templates recursively through dicts and lists. """
    if isinstance(value, str):
        if not has_placeholders(value):
            return value
        template = cache.template(value) if cache is not None else compile_template(value)
        return template.evaluate(env)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, env, cache) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, env, cache) for item in value]
    return value


def resolve_required(source: str, env: Mapping[str, Any], node_id: Optional[str] = None,
                     cache: Optional[TemplateCache] = None) -> Any:
    """ Resolve a control-flow expression; a missing value is an error, not an empty string. """
    expression = cache.expression(source) if cache is not None else compile_expression(source)
    value = expression.evaluate(env)
    if value is MISSING:
        raise UnresolvedVariableError(source, node_id)
    return value
