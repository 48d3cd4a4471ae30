import argparse
import logging
import math
import operator
import pprint
import re
import sys
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class TildeError(Exception):
    def __init__(self, message, pos=None):
        self.message = message
        self.pos = pos
        super().__init__(message if pos is None else f"{message} @ {pos}")

class ParseError(TildeError): pass
class UnmatchedBracketError(ParseError): pass
class MalformedReductionError(ParseError): pass

class EvalError(TildeError): pass
class TypeMismatchError(EvalError): pass
class InvalidAssignmentTargetError(EvalError): pass
class UnboundElseError(EvalError): pass
class IndexOutOfRangeError(EvalError): pass
class KeyNotFoundError(EvalError): pass
class UninvocableValueError(EvalError): pass
class RecursionDepthError(EvalError): pass


SYMBOLS = {
    "!=", ">=", "<=", "??", "!?", "::", "~~", "[]", "{}",
    "!", "%", "*", "(", ")", "-", "+", "=", ":", "<", ">", "/", "^",
    "{", "}", "[", "]", ".", "?", "~", ";",
}
MAX_SYMBOL_LENGTH = 3
ESCAPES = {
    "0": "\0", "r": "\r", "n": "\n", "b": "\b",
    "f": "\f", "a": "\a", "t": "\t", "v": "\v",
}

@dataclass(frozen=True)
class Token:
    kind: str
    start: int
    length: int
    text: str
    value: object = None


class Scanner:
    def __init__(self, src):
        self._src = src
        self._pos = 0
        self._tokens = []

    def tokenize(self):
        while self._current_char() != "$EOF":
            start = self._pos
            match self._current_char():
                case ch if ch.isspace():
                    self._whitespace(start)
                case "/" if self._peek_char() in ("/", "*"):
                    self._comment(start)
                case '"':
                    self._string(start)
                case ch if ch.isalpha():
                    self._identifier(start)
                case ch if ch.isdecimal():
                    self._number(start)
                case _:
                    self._symbol(start)
        return self._tokens

    def _whitespace(self, start):
        while self._current_char().isspace():
            self._advance()
        self._add("whitespace", start)

    def _comment(self, start):
        self._advance()
        if self._advance() == "/":
            while self._current_char() not in ("$EOF", "\n", "\r"):
                self._advance()
        else:
            end = self._src.find("*/", self._pos)
            self._pos = len(self._src) if end < 0 else end + 2
        self._add("comment", start)

    def _string(self, start):
        self._advance()
        chars = []
        while self._current_char() not in ("$EOF", '"'):
            ch = self._advance()
            if ch == "\\" and self._current_char() != "$EOF":
                ch = ESCAPES.get(self._current_char(), self._current_char())
                self._advance()
            chars.append(ch)
        if self._current_char() == '"':
            self._advance()
        self._add("string", start, "".join(chars))

    def _identifier(self, start):
        while self._current_char().isalnum() or self._current_char() == "_":
            self._advance()
        self._add("identifier", start)

    def _number(self, start):
        seen_dot = False
        while self._current_char().isdecimal() or \
                (self._current_char() == "." and not seen_dot):
            seen_dot = seen_dot or self._current_char() == "."
            self._advance()
        self._add("number", start, float(self._src[start:self._pos]))

    def _symbol(self, start):
        for length in range(MAX_SYMBOL_LENGTH, 0, -1):
            candidate = self._src[start:start + length]
            if len(candidate) == length and candidate in SYMBOLS:
                self._pos += length
                self._add("symbol", start)
                return
        self._advance()
        self._add("bad", start)

    def _add(self, kind, start, value=None):
        text = self._src[start:self._pos]
        self._tokens.append(Token(kind, start, len(text), text, value))

    def _advance(self):
        self._pos += 1
        return self._src[self._pos - 1]

    def _current_char(self):
        if self._pos < len(self._src):
            return self._src[self._pos]
        else:
            return "$EOF"

    def _peek_char(self):
        if self._pos + 1 < len(self._src):
            return self._src[self._pos + 1]
        else:
            return "$EOF"


# Tightest binding first; every binary level folds to the left.
BINARY_OPERATORS = [
    {"."},
    {"^"},
    {"*", "/", "%"},
    {"+", "-"},
    {"=", "!=", ">", "<", ">=", "<="},
    {":"},
    {"?", "??", "!?", "::"},
    {";"},
]
UNARY_OPERATORS = [{"+", "-"}, {"!"}, {"~~"}]
ROOT_LITERALS = {"[]", "{}", "~"}
BRACKETS = {"(": ")", "[": "]", "{": "}"}
CLOSING_BRACKETS = set(BRACKETS.values())


class Parser:
    def __init__(self, tokens):
        self._tokens = [t for t in tokens if t.kind not in ("whitespace", "comment")]
        self._end = tokens[-1].start + tokens[-1].length if tokens else 0
        self._pos = 0
        self._closers = []

    def parse(self):
        expr = self._expression()
        token = self._current_token()
        if token.kind != "$EOF":
            if self._is_closing(token):
                raise UnmatchedBracketError(f"Unmatched `{token.text}`", token.start)
            raise MalformedReductionError(f"Extra token `{token.text}`", token.start)
        return expr

    def _expression(self):
        return self._binary(len(BINARY_OPERATORS) - 1)

    def _binary(self, level):
        if level < 0:
            return self._unary(len(UNARY_OPERATORS) - 1)
        left = self._binary(level - 1)
        while self._is_symbol(BINARY_OPERATORS[level]):
            op = self._advance().text
            left = ("binary", op, left, self._binary(level - 1))
        return left

    # A unary level only wraps operands of tighter levels, so "!-3" parses
    # while "-!3" and "--3" do not.
    def _unary(self, level):
        if level < 0:
            return self._primary()
        if self._is_symbol(UNARY_OPERATORS[level]):
            op = self._advance().text
            return ("unary", op, self._unary(level - 1))
        return self._unary(level - 1)

    def _primary(self):
        token = self._current_token()
        match token.kind, token.text:
            case ("number" | "string"), _:
                self._advance()
                return ("literal", token.value)
            case "identifier", name:
                self._advance()
                return self._postfix(("ident", name))
            case "symbol", text if text in ROOT_LITERALS:
                self._advance()
                return ("root", text)
            case "symbol", text if text in BRACKETS:
                return self._postfix(self._group(allow_empty=True))
            case "symbol", text if text in CLOSING_BRACKETS and text not in self._closers:
                raise UnmatchedBracketError(f"Unmatched `{text}`", token.start)
            case "$EOF", _:
                raise MalformedReductionError("Expected an operand", token.start)
            case _:
                raise MalformedReductionError(f"Unexpected token `{token.text}`", token.start)

    def _postfix(self, expr):
        match expr:
            case ("ident", name) if self._is_symbol({"(", "["}):
                kind = "invoke" if self._current_token().text == "(" else "deref"
                return (kind, name, self._group(allow_empty=False))
        return expr

    def _group(self, allow_empty):
        opener = self._advance()
        closer = BRACKETS[opener.text]
        if allow_empty and opener.text == "[" and self._is_symbol({"]"}):
            self._advance()
            return ("root", "[]")
        self._closers.append(closer)
        expr = self._expression()
        self._closers.pop()
        self._consume(closer, opener)
        return expr

    def _consume(self, closer, opener):
        token = self._current_token()
        if token.kind == "symbol" and token.text == closer:
            return self._advance()
        if self._is_closing(token) and token.text not in self._closers:
            raise UnmatchedBracketError(f"Unmatched `{token.text}`", token.start)
        if token.kind == "$EOF":
            raise MalformedReductionError(f"`{opener.text}` is never closed", opener.start)
        raise MalformedReductionError(f"Extra token `{token.text}`", token.start)

    def _is_symbol(self, texts):
        token = self._current_token()
        return token.kind == "symbol" and token.text in texts

    def _is_closing(self, token):
        return token.kind == "symbol" and token.text in CLOSING_BRACKETS

    def _current_token(self):
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        else:
            return Token("$EOF", self._end, 0, "")

    def _advance(self):
        self._pos += 1
        return self._tokens[self._pos - 1]


def lex_and_parse(text):
    return Parser(Scanner(text).tokenize()).parse()


@dataclass(eq=False)
class Function:
    param: str
    body: tuple
    scope: "Scope" = field(repr=False)


def type_name(value):
    match value:
        case None: return "Null"
        case float(): return "Double"
        case str(): return "String"
        case list(): return "Array"
        case dict(): return "Dictionary"
        case _ if isinstance(value, Function) or callable(value): return "Function"
        case _: return type(value).__name__

NUMERIC_TEXT = re.compile(r"\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*", re.ASCII)

def format_number(value):
    text = repr(value).replace("e", "E")
    return text[:-2] if text.endswith(".0") else text

def format_value(value):
    match value:
        case None: return "null"
        case float(): return format_number(value)
        case str(): return value
        case list(): return "[Array]"
        case dict(): return "[Dictionary]"
        case _: return "[Function]"

def as_double(value):
    match value:
        case float():
            return value
        case str() if NUMERIC_TEXT.fullmatch(value):
            return float(value)
        case str():
            raise TypeMismatchError(f"Cannot convert {value!r} to Double")
        case None:
            return math.nan
        case _:
            raise TypeMismatchError(f"{type_name(value)} has no Double value")

def as_string(value):
    match value:
        case float(): return format_number(value)
        case str(): return value
        case None: return ""
        case _: raise TypeMismatchError(f"{type_name(value)} has no String value")

def as_raw(value):
    match value:
        case list(): return [as_raw(item) for item in value]
        case dict(): return {key: as_raw(item) for key, item in value.items()}
        case _: return value

def is_truthy(value):
    match value:
        case float(): return value != 0
        case str(): return value != ""
        case None: return False
        case _: return True


def _index(index):
    try:
        return int(index)
    except (ValueError, OverflowError):
        raise IndexOutOfRangeError(f"Index out of range: {format_number(index)}") from None

def get_item(container, index):
    match container, index:
        case dict(), str():
            if index not in container:
                raise KeyNotFoundError(f"Key not found: {index!r}")
            return container[index]
        case list(), float():
            position = _index(index)
            if not 0 <= position < len(container):
                raise IndexOutOfRangeError(f"Index out of range: {position}")
            return container[position]
        case _:
            raise TypeMismatchError(
                f"Unable to dereference {type_name(container)} by {type_name(index)}")

def set_item(container, index, value):
    match container, index:
        case dict(), str():
            container[index] = value
        case list(), float():
            position = _index(index)
            if position == len(container):
                container.append(value)
            elif 0 <= position < len(container):
                container[position] = value
            else:
                raise IndexOutOfRangeError(f"Index out of range: {position}")
        case _:
            raise TypeMismatchError(
                f"Unable to dereference {type_name(container)} by {type_name(index)}")


def _divide(a, b):
    if b != 0:
        return a / b
    if a == 0 or math.isnan(a):
        return math.nan
    return math.copysign(math.inf, a) * math.copysign(1.0, b)

def _remainder(a, b):
    if b == 0 or math.isinf(a):
        return math.nan
    return math.fmod(a, b)

def _power(a, b):
    try:
        return math.pow(a, b)
    except OverflowError:
        return -math.inf if a < 0 and b % 2 == 1 else math.inf
    except ValueError:
        return math.inf if a == 0 else math.nan

ARITHMETIC = {
    "+": operator.add, "-": operator.sub, "*": operator.mul,
    "/": _divide, "%": _remainder, "^": _power,
}
COMPARISONS = {
    "=": operator.eq, "!=": operator.ne, ">": operator.gt,
    "<": operator.lt, ">=": operator.ge, "<=": operator.le,
}

def apply_operator(op, left, right):
    match left:
        case float() | None:
            return _apply_numeric(op, as_double(left), as_double(right))
        case str() if op == "+":
            return left + as_string(right)
        case str() if op in COMPARISONS:
            return 1.0 if COMPARISONS[op](left, as_string(right)) else 0.0
        case str():
            return _apply_numeric(op, as_double(left), as_double(right))
        case _:
            raise TypeMismatchError(f"Unknown operator `{op}` for {type_name(left)}")

def _apply_numeric(op, a, b):
    if op in COMPARISONS:
        return 1.0 if COMPARISONS[op](a, b) else 0.0
    return ARITHMETIC[op](a, b)


class Scope:
    def __init__(self):
        self._frames = [{}]

    def __repr__(self):
        return " < ".join(
            "[__builtins__]" if "__builtins__" in frame else f"[{', '.join(frame)}]"
            for frame in reversed(self._frames))

    @property
    def depth(self):
        return len(self._frames)

    def get(self, name):
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return None

    def set(self, name, value):
        self._frames[-1][name] = value
        return value

    def enter_scope(self):
        self._frames.append({})
        logger.debug("Entered scope, depth %d", len(self._frames))

    def leave_scope(self):
        assert len(self._frames) > 1, "Cannot leave the outermost scope @ leave_scope()"
        self._frames.pop()
        logger.debug("Left scope, depth %d", len(self._frames))

    def restore(self, depth):
        del self._frames[max(depth, 1):]


@dataclass
class Break:
    value: object = None

@dataclass
class Return:
    value: object = None

def is_escape(result):
    return isinstance(result, (Break, Return))


class Evaluator:
    def evaluate(self, expr, scope):
        match expr:
            case ("literal", value):
                return value
            case ("ident", name):
                return scope.get(name)
            case ("root", "[]"):
                return []
            case ("root", "{}"):
                return {}
            case ("root", "~"):
                return Break()
            case ("unary", op, operand):
                return self._evaluate_unary(op, operand, scope)
            case ("binary", ":", target, value_expr):
                return self._evaluate_assign(target, value_expr, scope)
            case ("binary", ";", first, second):
                return self._evaluate_seq(first, second, scope)
            case ("binary", "?", cond_expr, body_expr):
                return self._evaluate_while(cond_expr, body_expr, scope)
            case ("binary", ("??" | "!?") as op, cond_expr, then_expr):
                return self._evaluate_if(op, cond_expr, then_expr, None, scope)
            case ("binary", "::", if_expr, else_expr):
                return self._evaluate_else(if_expr, else_expr, scope)
            case ("binary", ".", dict_expr, key_expr):
                return self._evaluate_member(dict_expr, key_expr, scope)
            case ("binary", op, left, right):
                return self._evaluate_op(op, left, right, scope)
            case ("deref", name, index_expr):
                return self._evaluate_deref(name, index_expr, scope)
            case ("invoke", name, arg_expr):
                return self._evaluate_invoke(name, arg_expr, scope)
            case unexpected:
                assert False, f"Unexpected expression @ evaluate(): {unexpected}"

    def _evaluate_unary(self, op, operand_expr, scope):
        operand = self.evaluate(operand_expr, scope)
        if is_escape(operand):
            return operand
        match op:
            case "+": return as_double(operand)
            case "-": return -as_double(operand)
            case "!": return 0.0 if is_truthy(operand) else 1.0
            case "~~": return Return(operand)

    def _evaluate_assign(self, target, value_expr, scope):
        match target:
            case ("invoke", name, ("ident", param)):
                return scope.set(name, Function(param, value_expr, scope))
            case ("invoke", name, _):
                raise InvalidAssignmentTargetError(
                    f"Parameter of `{name}` must be an identifier")

        value = self.evaluate(value_expr, scope)
        if is_escape(value):
            return value
        match target:
            case ("ident", name):
                scope.set(name, value)
            case ("binary", ".", dict_expr, ("ident", key)):
                container = self.evaluate(dict_expr, scope)
                if is_escape(container):
                    return container
                set_item(container, key, value)
            case ("deref", name, index_expr):
                index = self.evaluate(index_expr, scope)
                if is_escape(index):
                    return index
                set_item(scope.get(name), index, value)
            case _:
                raise InvalidAssignmentTargetError("Cannot assign to non-identifier")
        return value

    def _evaluate_seq(self, first, second, scope):
        exprs = [second]
        while first[:2] == ("binary", ";"):
            _, _, first, rest = first
            exprs.append(rest)
        exprs.append(first)

        val = None
        for expr in reversed(exprs):
            val = self.evaluate(expr, scope)
            if is_escape(val):
                return val
        return val

    def _evaluate_while(self, cond_expr, body_expr, scope):
        cond = None
        while True:
            result = self.evaluate(cond_expr, scope)
            match result:
                case Break(): return cond
                case Return(): return result
            cond = result
            if not is_truthy(cond):
                return cond
            match self.evaluate(body_expr, scope):
                case Break(): return cond
                case Return() as escape: return escape

    def _evaluate_if(self, op, cond_expr, then_expr, else_expr, scope):
        cond = self.evaluate(cond_expr, scope)
        if is_escape(cond):
            return cond
        if is_truthy(cond) == (op == "??"):
            return self.evaluate(then_expr, scope)
        if else_expr is None:
            return cond
        return self.evaluate(else_expr, scope)

    def _evaluate_else(self, if_expr, else_expr, scope):
        match if_expr:
            case ("binary", ("??" | "!?") as op, cond_expr, then_expr):
                return self._evaluate_if(op, cond_expr, then_expr, else_expr, scope)
            case _:
                raise UnboundElseError("Unbalanced else")

    def _evaluate_member(self, dict_expr, key_expr, scope):
        container = self.evaluate(dict_expr, scope)
        if is_escape(container):
            return container
        match container, key_expr:
            case dict(), ("ident", key):
                return get_item(container, key)
            case dict(), _:
                raise TypeMismatchError("Member name must be an identifier")
            case _:
                raise TypeMismatchError(f"Unable to access a member of {type_name(container)}")

    def _evaluate_op(self, op, left_expr, right_expr, scope):
        # Left-nested operator chains are folded in a loop, leftmost operand first.
        chain = [(op, right_expr)]
        while left_expr[0] == "binary" and \
                (left_expr[1] in ARITHMETIC or left_expr[1] in COMPARISONS):
            _, inner_op, left_expr, inner_right = left_expr
            chain.append((inner_op, inner_right))

        left = self.evaluate(left_expr, scope)
        if is_escape(left):
            return left
        for op, right_expr in reversed(chain):
            right = self.evaluate(right_expr, scope)
            if is_escape(right):
                return right
            left = apply_operator(op, left, right)
        return left

    def _evaluate_deref(self, name, index_expr, scope):
        container = scope.get(name)
        index = self.evaluate(index_expr, scope)
        if is_escape(index):
            return index
        return get_item(container, index)

    def _evaluate_invoke(self, name, arg_expr, scope):
        arg = self.evaluate(arg_expr, scope)
        if is_escape(arg):
            return arg

        match scope.get(name):
            case Function() as function:
                return self._call(function, arg)
            case c if callable(c):
                return c(arg)
            case other:
                raise UninvocableValueError(f"Unable to invoke {type_name(other)} `{name}`")

    def _call(self, function, arg):
        logger.debug("Calling function(%s) with %s", function.param, format_value(arg))
        function.scope.enter_scope()
        try:
            function.scope.set(function.param, arg)
            result = self.evaluate(function.body, function.scope)
        finally:
            function.scope.leave_scope()
        if isinstance(result, Return):
            return result.value
        return result


def builtin_print(value):
    print(format_value(value))
    return value

def builtin_len(value):
    match value:
        case str() | list() | dict():
            return float(len(value))
        case _:
            raise TypeMismatchError(f"{type_name(value)} has no length")


RECURSION_LIMIT = 20000


class Interpreter:
    def __init__(self, recursion_limit=RECURSION_LIMIT):
        self._scope = Scope()
        if sys.getrecursionlimit() < recursion_limit:
            sys.setrecursionlimit(recursion_limit)

    @property
    def scope(self):
        return self._scope

    def init_env(self):
        self._scope.set("__builtins__", None)
        self._scope.set("print", builtin_print)
        self._scope.set("len", builtin_len)

        self._scope.enter_scope()
        return self

    def scan(self, src):
        return Scanner(src).tokenize()

    def parse(self, tokens):
        try:
            return Parser(tokens).parse()
        except RecursionError:
            raise MalformedReductionError("Expression is nested too deeply") from None

    def ast(self, src):
        return self.parse(self.scan(src))

    def evaluate(self, expr):
        depth = self._scope.depth
        try:
            result = Evaluator().evaluate(expr, self._scope)
        except RecursionError:
            self._scope.restore(depth)
            raise RecursionDepthError("Maximum recursion depth exceeded") from None
        return result.value if is_escape(result) else result

    def go(self, src):
        expr = self.ast(src)
        logger.debug("Parsed %r into %r", src, expr)
        return self.evaluate(expr)


def repl(interpreter, read_line=input):
    pretty = False
    while True:
        try:
            line = read_line("> ")
        except EOFError:
            break
        if line == "":
            break
        if line == "#pretty":
            pretty = not pretty
            continue

        try:
            expr = interpreter.ast(line)
            if pretty:
                pprint.pprint(expr)
            print(format_value(interpreter.evaluate(expr)))
        except TildeError as e:
            print(f"error: {e}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="tilde", description="Evaluate tilde programs.")
    parser.add_argument("sources", nargs="*",
                        help="Program files, evaluated in order. Starts a REPL when omitted.")
    parser.add_argument("--debug", action="store_true",
                        help="Log parse trees, calls and scopes at DEBUG level.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    interpreter = Interpreter().init_env()
    if not args.sources:
        return repl(interpreter)

    for path in args.sources:
        with open(path, "r", encoding="utf-8") as f:
            src = f.read()
        try:
            print(format_value(interpreter.go(src)))
        except TildeError as e:
            print(f"error: {path}: {e}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
