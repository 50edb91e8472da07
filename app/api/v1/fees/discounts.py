"""
Discount resolution: turn a template's components and discount rules into per-component net amounts
for one student.

Percentage discounts apply to the component's own amount, not the total. Each rule's effect is capped
at its max_amount; the discounted component never goes below zero. How several eligible rules on one
component combine is the template's explicit `discount_stacking` choice (ADDITIVE or HIGHEST_ONLY).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Sequence, Tuple

from app.core.enums import DiscountStacking, DiscountType
from app.core.exceptions import InvalidDiscountRule, ValidationError

from .money import HUNDRED, ZERO, to_money
from .schemas import DiscountRuleSpec, FeeComponentSpec

ALL_COMPONENTS = "all"
# Rule categories every student is eligible for, regardless of eligibility flags
UNIVERSAL_CATEGORIES = frozenset({"ALL", "GENERAL"})


@dataclass
class ComponentLine:
    name: str
    frequency: str
    base_amount: Decimal
    discount: Decimal
    net_amount: Decimal
    tax_amount: Decimal
    is_optional: bool = False

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "frequency": self.frequency,
            "base_amount": str(self.base_amount),
            "discount": str(self.discount),
            "net_amount": str(self.net_amount),
            "tax_amount": str(self.tax_amount),
            "is_optional": self.is_optional,
        }


@dataclass
class AppliedDiscount:
    rule_name: str
    category: str
    component: str
    amount: Decimal

    def as_dict(self) -> dict:
        return {
            "rule_name": self.rule_name,
            "category": self.category,
            "component": self.component,
            "amount": str(self.amount),
        }


@dataclass
class DiscountResolution:
    lines: List[ComponentLine] = field(default_factory=list)
    applied: List[AppliedDiscount] = field(default_factory=list)

    @property
    def gross_total(self) -> Decimal:
        return sum((line.base_amount for line in self.lines), ZERO)

    @property
    def total_discount(self) -> Decimal:
        return sum((line.discount for line in self.lines), ZERO)

    @property
    def total_tax(self) -> Decimal:
        return sum((line.tax_amount for line in self.lines), ZERO)

    @property
    def net_total(self) -> Decimal:
        return sum((line.net_amount for line in self.lines), ZERO)


def _targets_all(target: str) -> bool:
    return target.strip().lower() == ALL_COMPONENTS


def validate_discount_rules(
    components: Sequence[FeeComponentSpec],
    rules: Sequence[DiscountRuleSpec],
) -> None:
    """Configuration-time check. Raises InvalidDiscountRule on the first bad rule."""
    names = {c.name for c in components}
    for rule in rules:
        if rule.discount_type == DiscountType.PERCENTAGE and rule.value > HUNDRED:
            raise InvalidDiscountRule(f"Discount rule '{rule.name}' cannot exceed 100%")
        if not rule.applicable_to:
            raise InvalidDiscountRule(f"Discount rule '{rule.name}' does not apply to any component")
        for target in rule.applicable_to:
            if _targets_all(target):
                continue
            if target not in names:
                raise InvalidDiscountRule(
                    f"Discount rule '{rule.name}' references unknown component '{target}'"
                )


def is_eligible(rule: DiscountRuleSpec, eligibility_flags: Iterable[str]) -> bool:
    if not rule.is_active:
        return False
    category = rule.category.strip().upper()
    if category in UNIVERSAL_CATEGORIES:
        return True
    return category in {f.strip().upper() for f in eligibility_flags}


def rule_applies_to(rule: DiscountRuleSpec, component_name: str) -> bool:
    return any(_targets_all(t) or t == component_name for t in rule.applicable_to)


def rule_effect(rule: DiscountRuleSpec, amount: Decimal) -> Decimal:
    """Reduction one rule makes on one component amount, before stacking and flooring."""
    if rule.discount_type == DiscountType.PERCENTAGE:
        effect = amount * rule.value / HUNDRED
    else:
        effect = rule.value
    if rule.max_amount is not None:
        effect = min(effect, rule.max_amount)
    return to_money(max(effect, ZERO))


def _stack(
    effects: List[Tuple[DiscountRuleSpec, Decimal]],
    stacking: DiscountStacking,
) -> List[Tuple[DiscountRuleSpec, Decimal]]:
    if stacking == DiscountStacking.HIGHEST_ONLY and effects:
        # Ties keep the rule configured first
        best = max(effects, key=lambda item: item[1])
        return [best]
    return effects


def resolve_discounts(
    components: Sequence[FeeComponentSpec],
    rules: Sequence[DiscountRuleSpec],
    eligibility_flags: Iterable[str] = (),
    stacking: DiscountStacking = DiscountStacking.ADDITIVE,
    selected_optional: Iterable[str] = (),
) -> DiscountResolution:
    validate_discount_rules(components, rules)

    selected = set(selected_optional)
    optional_names = {c.name for c in components if c.is_optional}
    unknown = sorted(selected - optional_names)
    if unknown:
        raise ValidationError(f"Not optional components of this template: {', '.join(unknown)}")

    flags = list(eligibility_flags)
    eligible = [r for r in rules if is_eligible(r, flags)]

    resolution = DiscountResolution()
    for component in components:
        if component.is_optional and component.name not in selected:
            continue
        base = to_money(component.amount)
        effects = [
            (rule, rule_effect(rule, base))
            for rule in eligible
            if rule_applies_to(rule, component.name)
        ]
        effects = _stack([(r, e) for r, e in effects if e > ZERO], stacking)

        # Floor at zero: later rules only get what earlier ones left
        remaining = base
        for rule, effect in effects:
            taken = min(effect, remaining)
            if taken <= ZERO:
                continue
            remaining -= taken
            resolution.applied.append(
                AppliedDiscount(rule_name=rule.name, category=rule.category, component=component.name, amount=taken)
            )
        discount = base - remaining
        net = remaining

        tax = ZERO
        if component.is_taxable and component.tax_percentage > ZERO:
            # Amounts are tax-inclusive; report the embedded tax portion of the net amount
            tax = to_money(net * component.tax_percentage / (HUNDRED + component.tax_percentage))

        resolution.lines.append(
            ComponentLine(
                name=component.name,
                frequency=component.frequency.value,
                base_amount=base,
                discount=discount,
                net_amount=net,
                tax_amount=tax,
                is_optional=component.is_optional,
            )
        )
    return resolution
