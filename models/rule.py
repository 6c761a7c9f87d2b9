"""
models/rule.py
──────────────
Typed trade rules and the per-trigger invocation context.

Rule-set documents (YAML/JSON) look like::

    - ruleID: sellBitThreshold
      invokeBy: [tradeIndexer]
      conditions:
        - expression: "minQuantity(1)"
      action: "sellBit(COPY_QTY)"

``conditions`` entries are call expressions parsed once, at load time, into
:class:`Condition` objects.  ``action`` is either a descriptor string of the
same call shape or an explicit mapping with a ``kind`` tag; both become one
of the :data:`TradeAction` variants.  ``COPY_QTY`` is a *binding*, not a
placeholder: the quantity is read from ``ctx.quantity`` at dispatch time.
"""
from __future__ import annotations

import ast
import hashlib
import json
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.portfolio import Portfolio
from models.proposed_order import OrderSide

CONTEXT_QUANTITY = "COPY_QTY"

QuantityBinding = Union[int, Literal["COPY_QTY"]]


# ---------------------------------------------------------------------------
# Expression parsing
# ---------------------------------------------------------------------------

def _literal(node: ast.AST, source: str) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        # bare identifiers are symbols: true/false or a plain string
        lowered = node.id.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return node.id
    if isinstance(node, (ast.List, ast.Tuple)):
        return tuple(_literal(elt, source) for elt in node.elts)
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        value = _literal(node.operand, source)
        if isinstance(value, (int, float)):
            return -value
    raise ValueError(f"Unsupported argument in expression {source!r}")


def parse_call_expression(source: str) -> tuple[str, tuple[Any, ...]]:
    """Parse ``name(arg, ...)`` into ``(name, args)``.

    Only literal arguments are accepted; nothing is ever evaluated.
    """
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"Malformed expression {source!r}: {exc.msg}") from exc
    call = tree.body
    if isinstance(call, ast.Name):
        return call.id, ()
    if not isinstance(call, ast.Call) or not isinstance(call.func, ast.Name) or call.keywords:
        raise ValueError(f"Expression must be a plain call, got {source!r}")
    return call.func.id, tuple(_literal(arg, source) for arg in call.args)


class Condition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: tuple[Any, ...] = ()

    @classmethod
    def parse(cls, expression: str) -> "Condition":
        name, args = parse_call_expression(expression)
        return cls(name=name, args=args)

    def __str__(self) -> str:
        rendered = ", ".join(json.dumps(a) for a in self.args)
        return f"{self.name}({rendered})"


# ---------------------------------------------------------------------------
# Actions (tagged union)
# ---------------------------------------------------------------------------

class _TradeActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    side: ClassVar[OrderSide]
    quantity: QuantityBinding = CONTEXT_QUANTITY

    def resolve_quantity(self, ctx: "InvocationContext") -> Optional[int]:
        """Bind the quantity for this dispatch (None when ctx carries none)."""
        if self.quantity == CONTEXT_QUANTITY:
            return ctx.quantity
        return int(self.quantity)


class BuyUpTo(_TradeActionBase):
    side: ClassVar[OrderSide] = OrderSide.BUY
    kind: Literal["buyUpTo"] = "buyUpTo"


class CopyBuy(_TradeActionBase):
    side: ClassVar[OrderSide] = OrderSide.BUY
    kind: Literal["copyBuy"] = "copyBuy"
    is_initial_fill: bool = False


class Sell(_TradeActionBase):
    side: ClassVar[OrderSide] = OrderSide.SELL
    kind: Literal["sellBit"] = "sellBit"
    auto_select_holder: bool = False


class CopySell(_TradeActionBase):
    side: ClassVar[OrderSide] = OrderSide.SELL
    kind: Literal["copySell"] = "copySell"


TradeAction = Annotated[
    Union[BuyUpTo, CopyBuy, Sell, CopySell],
    Field(discriminator="kind"),
]


def parse_action_descriptor(descriptor: str) -> dict[str, Any]:
    """Turn ``"copyBuy(COPY_QTY, true)"`` style strings into action mappings."""
    name, args = parse_call_expression(descriptor)
    quantity = args[0] if args else CONTEXT_QUANTITY
    if name == "buyUpTo":
        return {"kind": "buyUpTo", "quantity": quantity}
    if name == "copyBuy":
        return {
            "kind": "copyBuy",
            "quantity": quantity,
            "is_initial_fill": bool(args[1]) if len(args) > 1 else False,
        }
    if name == "sellBit":
        return {"kind": "sellBit", "quantity": quantity}
    if name == "sellBitFromAutoSelectedFleetKey":
        return {"kind": "sellBit", "quantity": quantity, "auto_select_holder": True}
    if name == "copySell":
        return {"kind": "copySell", "quantity": quantity}
    raise ValueError(f"Unknown action {name!r} in {descriptor!r}")


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------

class Rule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    rule_id: str = Field(alias="ruleID")
    invoke_by: tuple[str, ...] = Field(alias="invokeBy")
    conditions: tuple[Condition, ...] = ()
    action: TradeAction

    @field_validator("rule_id")
    @classmethod
    def rule_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("ruleID cannot be empty")
        return v.strip()

    @field_validator("invoke_by", mode="before")
    @classmethod
    def coerce_invoke_by(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        return v

    @field_validator("conditions", mode="before")
    @classmethod
    def coerce_conditions(cls, v: Any) -> Any:
        parsed = []
        for item in v or ():
            if isinstance(item, str):
                parsed.append(Condition.parse(item))
            elif isinstance(item, dict) and "expression" in item:
                parsed.append(Condition.parse(item["expression"]))
            else:
                parsed.append(item)
        return tuple(parsed)

    @field_validator("action", mode="before")
    @classmethod
    def coerce_action(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_action_descriptor(v)
        return v

    @property
    def side(self) -> OrderSide:
        return self.action.side

    def is_invokable_by(self, invoked_by: str) -> bool:
        return invoked_by in self.invoke_by

    def to_document(self) -> dict[str, Any]:
        """Serialisable form used by the rule-set store."""
        return {
            "ruleID": self.rule_id,
            "invokeBy": list(self.invoke_by),
            "conditions": [{"expression": str(c)} for c in self.conditions],
            "action": self.action.model_dump(mode="json"),
        }

    def content_hash(self) -> str:
        """sha256 over everything except ruleID; equal hashes ⇒ equivalent rules."""
        doc = self.to_document()
        doc.pop("ruleID")
        doc["invokeBy"] = sorted(doc["invokeBy"])
        blob = json.dumps(doc, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Invocation context
# ---------------------------------------------------------------------------

@dataclass
class InvocationContext:
    """Per-trigger context handed to the rules engine; never persisted."""

    invoked_by: str
    gamer: str
    holder: Optional[str] = None
    quantity: Optional[int] = None
    portfolio: Optional[Portfolio] = None
    is_buy: Optional[bool] = None
    rule: Optional[Rule] = None

    @property
    def portfolio_name(self) -> Optional[str]:
        return self.portfolio.portfolio_name if self.portfolio else None
