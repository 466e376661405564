"""Unit and conversion lookups.

Conversion factors count main units per unit: one box with factor 10 holds ten
main units, so ``quantity_in_main = quantity * factor``. The main unit of a
product always resolves to factor 1, even without a conversion row.

Lookups that may legitimately miss return a tagged result (``Resolved`` or
``Unresolved``) instead of raising, so each caller picks its own policy:
``factor_or_identity`` degrades to 1 for reporting values, while the strict
helpers raise ``UnresolvedReference``.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError

from apps.catalog.models import Product, Unit, UnitConversion, normalize_unit_name
from apps.common.decimals import ONE
from apps.common.exceptions import UnresolvedReference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    value: object
    resolved = True


@dataclass(frozen=True)
class Unresolved:
    reason: str
    resolved = False


def get_product(product_id):
    try:
        product = Product.objects.select_related("main_unit").filter(pk=product_id).first()
    except DjangoValidationError:
        product = None
    if product is None:
        raise UnresolvedReference("Product not found.", product_id=product_id)
    return product


def main_unit_of(product: Product) -> Unit:
    if product.main_unit_id is None:
        raise UnresolvedReference(
            f"Product '{product.name}' has no main unit configured.",
            code="main_unit_missing",
            product_id=product.id,
        )
    return product.main_unit


def find_unit_by_name(name):
    normalized = normalize_unit_name(name)
    if not normalized:
        return None
    return Unit.objects.filter(name__iexact=normalized).first()


def resolve_unit_by_name(name):
    unit = find_unit_by_name(name)
    if unit is None:
        return Unresolved(f"unit '{name}' does not exist")
    return Resolved(unit)


def resolve_unit(*, unit_id=None, name=None) -> Unit:
    """Strict unit lookup by id, falling back to the name when no id is given."""
    if unit_id:
        unit = Unit.objects.filter(pk=unit_id).first()
        if unit is None:
            raise UnresolvedReference("Unit not found.", unit_id=unit_id)
        return unit
    unit = find_unit_by_name(name)
    if unit is None:
        raise UnresolvedReference(f"Unit '{name or ''}' not found.", unit=name)
    return unit


def conversion_factor(product: Product, unit_id):
    if unit_id is None:
        return Unresolved("no unit given")
    if product.main_unit_id is not None and str(product.main_unit_id) == str(unit_id):
        return Resolved(ONE)
    factor = (
        UnitConversion.objects.filter(product_id=product.id, unit_id=unit_id)
        .values_list("conversion_factor", flat=True)
        .first()
    )
    if factor is None:
        return Unresolved(f"no conversion for unit {unit_id} on product {product.id}")
    return Resolved(factor)


def factor_or_identity(product: Product, unit_id) -> Decimal:
    result = conversion_factor(product, unit_id)
    if result.resolved:
        return result.value
    logger.warning(f"Conversion unresolved, using factor 1: {result.reason}")
    return ONE


def conversion_map(product: Product) -> dict:
    """Factor for every tracked unit of ``product`` keyed by unit id (main unit included)."""
    factors = {
        conversion.unit_id: conversion.conversion_factor
        for conversion in UnitConversion.objects.filter(product_id=product.id)
    }
    if product.main_unit_id is not None:
        factors[product.main_unit_id] = ONE
    return factors


def to_main_quantity(quantity, factor):
    return quantity * factor


def from_main_quantity(main_quantity, factor):
    return main_quantity / factor
