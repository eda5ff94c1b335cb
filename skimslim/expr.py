from __future__ import annotations

import re
from typing import Any, List, Optional, Set

from skimslim.errors import SyntaxOrBindingError

# =========================
# Selection expression language (tokenizer + parser)
#
# AST nodes are tuples:
#   ("lit", value)
#   ("col", name, pos, index)        index is None or a non-negative int
#   ("neg", inner)
#   ("bin", op, left, right)         op in + - * /
#   ("cmp", op, left, right)         op in == != > >= < <=
#   ("and", left, right) / ("or", left, right) / ("not", inner)
# =========================

_re_ws = re.compile(r"\s+")
_re_ident = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
_re_number = re.compile(r"(?:\d+\.\d*(?:[eE][+-]?\d+)?|\d*\.\d+(?:[eE][+-]?\d+)?|\d+(?:[eE][+-]?\d+)?)")

KEYWORDS = {"and", "or", "not", "true", "false", "null"}
OPS_2 = {"==", "!=", ">=", "<=", "&&", "||"}
OPS_1 = {">", "<", "(", ")", "[", "]", "+", "-", "*", "/", "!"}
CMP_OPS = {"==", "!=", ">=", "<=", ">", "<"}

# C-style spellings accepted for the boolean keywords
_ALIASES = {"&&": "and", "||": "or", "!": "not"}


class _ExprTok:
    __slots__ = ("typ", "val", "pos")

    def __init__(self, typ: str, val: Any, pos: int):
        self.typ = typ
        self.val = val
        self.pos = pos


def _caret(src: str, pos: int) -> str:
    return f"At position {pos}: {src}\n" + (" " * (pos + len(f"At position {pos}: "))) + "^"


def tokenize(src: str) -> List[_ExprTok]:
    out: List[_ExprTok] = []
    i = 0
    n = len(src)

    while i < n:
        m = _re_ws.match(src, i)
        if m:
            i = m.end()
            continue

        if src[i] in ("'", '"'):
            q = src[i]
            j = i + 1
            buf = []
            while j < n:
                ch = src[j]
                if ch == "\\" and j + 1 < n:
                    buf.append(src[j + 1])
                    j += 2
                    continue
                if ch == q:
                    out.append(_ExprTok("STR", "".join(buf), i))
                    i = j + 1
                    break
                buf.append(ch)
                j += 1
            else:
                raise SyntaxOrBindingError(
                    "E_SELECTION_PARSE",
                    "Unterminated string literal in expression.",
                    hint=_caret(src, i),
                )
            continue

        two = src[i: i + 2]
        if two in OPS_2:
            if two in _ALIASES:
                out.append(_ExprTok("KW", _ALIASES[two], i))
            else:
                out.append(_ExprTok("OP", two, i))
            i += 2
            continue

        if src[i] in OPS_1:
            if src[i] in _ALIASES:
                out.append(_ExprTok("KW", _ALIASES[src[i]], i))
            else:
                out.append(_ExprTok("OP", src[i], i))
            i += 1
            continue

        m = _re_number.match(src, i)
        if m:
            s = m.group(0)
            is_float = "." in s or "e" in s or "E" in s
            out.append(_ExprTok("NUM", float(s) if is_float else int(s), i))
            i = m.end()
            continue

        m = _re_ident.match(src, i)
        if m:
            s = m.group(0)
            # keywords are lowercase; other spellings name columns
            if s in KEYWORDS:
                out.append(_ExprTok("KW", s, i))
            else:
                out.append(_ExprTok("IDENT", s, i))
            i = m.end()
            continue

        raise SyntaxOrBindingError(
            "E_SELECTION_PARSE",
            f"Unexpected character {src[i]!r} in expression.",
            hint=_caret(src, i),
        )

    out.append(_ExprTok("EOF", None, n))
    return out


def parse(src: str) -> Any:
    """Parse one selection expression into an AST."""
    toks = tokenize(src)
    k = 0

    def _peek() -> _ExprTok:
        return toks[k]

    def _is_kw(val: str) -> bool:
        return _peek().typ == "KW" and _peek().val == val

    def _eat(expected_typ: str, expected_val: Optional[str] = None) -> _ExprTok:
        nonlocal k
        t = toks[k]
        if t.typ != expected_typ:
            found = "end of expression" if t.typ == "EOF" else f"{t.typ} {t.val!r}"
            raise SyntaxOrBindingError(
                "E_SELECTION_PARSE",
                f"Expected {expected_val or expected_typ} but found {found}.",
                hint=_caret(src, t.pos),
            )
        if expected_val is not None and t.val != expected_val:
            raise SyntaxOrBindingError(
                "E_SELECTION_PARSE",
                f"Expected '{expected_val}' but found '{t.val}'.",
                hint=_caret(src, t.pos),
            )
        k += 1
        return t

    def parse_expr():
        return parse_or()

    def parse_or():
        node = parse_and()
        while _is_kw("or"):
            _eat("KW", "or")
            rhs = parse_and()
            node = ("or", node, rhs)
        return node

    def parse_and():
        node = parse_not()
        while _is_kw("and"):
            _eat("KW", "and")
            rhs = parse_not()
            node = ("and", node, rhs)
        return node

    def parse_not():
        if _is_kw("not"):
            _eat("KW", "not")
            return ("not", parse_not())
        return parse_cmp()

    def parse_cmp():
        left = parse_add()
        if _peek().typ == "OP" and _peek().val in CMP_OPS:
            op_tok = _eat("OP")
            right = parse_add()
            return ("cmp", op_tok.val, left, right)
        return left

    def parse_add():
        node = parse_mul()
        while _peek().typ == "OP" and _peek().val in {"+", "-"}:
            op_tok = _eat("OP")
            rhs = parse_mul()
            node = ("bin", op_tok.val, node, rhs)
        return node

    def parse_mul():
        node = parse_unary()
        while _peek().typ == "OP" and _peek().val in {"*", "/"}:
            op_tok = _eat("OP")
            rhs = parse_unary()
            node = ("bin", op_tok.val, node, rhs)
        return node

    def parse_unary():
        if _peek().typ == "OP" and _peek().val == "-":
            _eat("OP", "-")
            inner = parse_unary()
            return ("neg", inner)
        return parse_atom()

    def parse_atom():
        t = _peek()
        if t.typ == "OP" and t.val == "(":
            _eat("OP", "(")
            node = parse_expr()
            _eat("OP", ")")
            return node
        if t.typ == "IDENT":
            _eat("IDENT")
            index = None
            if _peek().typ == "OP" and _peek().val == "[":
                _eat("OP", "[")
                it = _peek()
                if it.typ != "NUM" or not isinstance(it.val, int):
                    raise SyntaxOrBindingError(
                        "E_SELECTION_PARSE",
                        "Array index must be a non-negative integer literal.",
                        hint=_caret(src, it.pos),
                    )
                _eat("NUM")
                _eat("OP", "]")
                index = it.val
            return ("col", t.val, t.pos, index)
        if t.typ == "NUM":
            _eat("NUM")
            return ("lit", t.val)
        if t.typ == "STR":
            _eat("STR")
            return ("lit", t.val)
        if t.typ == "KW" and t.val in {"true", "false", "null"}:
            _eat("KW")
            if t.val == "true":
                return ("lit", True)
            if t.val == "false":
                return ("lit", False)
            return ("lit", None)
        found = "end of expression" if t.typ == "EOF" else f"token '{t.val}'"
        raise SyntaxOrBindingError(
            "E_SELECTION_PARSE",
            f"Unexpected {found} in expression.",
            hint=_caret(src, t.pos),
        )

    ast = parse_expr()
    _eat("EOF")
    return ast


def referenced_columns(node: Any) -> Set[str]:
    tag = node[0]
    if tag == "col":
        return {node[1]}
    if tag == "lit":
        return set()
    out: Set[str] = set()
    for child in node[1:]:
        if isinstance(child, tuple):
            out |= referenced_columns(child)
    return out


def render(node: Any) -> str:
    """Render an AST back to expression text (fully parenthesized)."""
    tag = node[0]
    if tag == "lit":
        v = node[1]
        if v is True:
            return "true"
        if v is False:
            return "false"
        if v is None:
            return "null"
        return repr(v)
    if tag == "col":
        _, name, _, index = node
        return name if index is None else f"{name}[{index}]"
    if tag == "neg":
        return f"-{render(node[1])}"
    if tag == "not":
        return f"not {render(node[1])}"
    if tag in ("and", "or"):
        return f"({render(node[1])} {tag} {render(node[2])})"
    _, op, left, right = node
    return f"({render(left)} {op} {render(right)})"
