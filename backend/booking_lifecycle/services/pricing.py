"""
Edit pricing.

  price_delta = added seats + added add-ons          (new charges)
  fees        = reschedule fee once free reschedules are used up
  refunds     = removed seats x refund percent + removed add-ons at price paid
  final       = price_delta + fees - refunds         (> 0 charge, < 0 refund)
  new total   = total + price_delta - full value of removed seats and add-ons

Seats are priced at current total / current players. Removed seats use the
same per-seat rate scaled by the player-reduction percent, which the caller
picks with the policy engine's tier selection. Everything is integer cents,
rounded half-up once per line.
"""

from typing import Optional

from booking_lifecycle.core.money import format_cents, prorate
from booking_lifecycle.schemas.booking import AddOn, Booking
from booking_lifecycle.schemas.course import Course, CourseEditRules
from booking_lifecycle.schemas.edit import BookingChanges, PriceCalculation, PriceLineItem


def is_reschedule(booking: Booking, changes: BookingChanges) -> bool:
    return changes.tee_datetime is not None and changes.tee_datetime != booking.tee_datetime


def unknown_add_ons(booking: Booking, course: Course, changes: BookingChanges) -> list[str]:
    owned = {a.id for a in booking.add_ons}
    return sorted(
        add_on_id for add_on_id in (changes.add_ons or {})
        if add_on_id not in course.add_on_catalog and add_on_id not in owned
    )


def apply_add_on_changes(booking: Booking, course: Course, desired: Optional[dict[str, int]]) -> list[AddOn]:
    if desired is None:
        return list(booking.add_ons)
    result = []
    current = {a.id: a for a in booking.add_ons}
    for add_on in booking.add_ons:
        quantity = desired.get(add_on.id, add_on.quantity)
        if quantity > 0:
            result.append(add_on.model_copy(update={"quantity": quantity}))
    for add_on_id, quantity in desired.items():
        if add_on_id in current or quantity <= 0:
            continue
        result.append(AddOn(
            id=add_on_id,
            name=course.add_on_names.get(add_on_id, add_on_id),
            price_cents=course.add_on_catalog[add_on_id],
            quantity=quantity,
        ))
    return result


def calculate_edit_price(
    booking: Booking,
    course: Course,
    rules: CourseEditRules,
    changes: BookingChanges,
    reduction_percent: int,
) -> PriceCalculation:
    charges: list[PriceLineItem] = []
    fees: list[PriceLineItem] = []
    refunds: list[PriceLineItem] = []

    if is_reschedule(booking, changes) and booking.reschedules_used >= rules.free_reschedules:
        fees.append(PriceLineItem(description="Reschedule fee", amount_cents=rules.reschedule_fee_cents))

    players = booking.number_of_players
    new_players = changes.number_of_players or players
    applied_percent = None
    released = 0  # full value leaving the booking total, whatever share is refunded
    if new_players > players:
        added = new_players - players
        charges.append(PriceLineItem(
            description=f"{added} additional player(s)",
            amount_cents=prorate(booking.total_amount_cents, added, players),
        ))
    elif new_players < players:
        removed = players - new_players
        applied_percent = reduction_percent
        released += prorate(booking.total_amount_cents, removed, players)
        refunds.append(PriceLineItem(
            description=f"{removed} player(s) removed ({reduction_percent}% refund)",
            amount_cents=prorate(booking.total_amount_cents, removed, players, reduction_percent),
        ))

    if changes.add_ons is not None:
        current = {a.id: a for a in booking.add_ons}
        for add_on_id, quantity in sorted(changes.add_ons.items()):
            owned = current.get(add_on_id)
            delta = quantity - (owned.quantity if owned else 0)
            if delta > 0:
                unit = course.add_on_catalog.get(add_on_id, owned.price_cents if owned else 0)
                charges.append(PriceLineItem(
                    description=f"Add-on {add_on_id} x{delta} at {format_cents(unit)}",
                    amount_cents=unit * delta,
                ))
            elif delta < 0 and owned is not None:
                released += owned.price_cents * -delta
                refunds.append(PriceLineItem(
                    description=f"Add-on {add_on_id} x{-delta} removed",
                    amount_cents=owned.price_cents * -delta,
                ))

    price_delta = sum(item.amount_cents for item in charges)
    total_fees = sum(item.amount_cents for item in fees)
    total_refunds = sum(item.amount_cents for item in refunds)
    return PriceCalculation(
        original_amount_cents=booking.total_amount_cents,
        new_amount_cents=max(0, booking.total_amount_cents + price_delta - released),
        price_delta_cents=price_delta,
        charges=charges,
        fees=fees,
        refunds=refunds,
        total_fees_cents=total_fees,
        total_refunds_cents=total_refunds,
        final_amount_cents=price_delta + total_fees - total_refunds,
        player_refund_percent=applied_percent,
    )
