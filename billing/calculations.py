"""Invoice money math. All amounts are integer minor units (cents)."""
import calendar
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from billing.models import Installment, InvoiceSummary

HUNDRED = Decimal(100)


def round_minor(value):
    """Round half up to a whole minor unit."""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _apply_discount(amount, discount):
    if discount is None:
        return amount
    value = Decimal(str(discount.value))
    if discount.type == "percentage":
        return amount * (1 - value / HUNDRED)
    return max(Decimal(0), amount - value)


def line_item_total(item):
    """Total for one line as sent to the processor: discount then tax, rounded once."""
    total = _apply_discount(Decimal(item.quantity) * Decimal(item.unit_price), item.discount)
    if item.tax_rate:
        total = total * (1 + Decimal(str(item.tax_rate)) / HUNDRED)
    return round_minor(total)


def calculate_summary(line_items, discount=None, taxes=None):
    # Lines are summed unrounded; rounding happens once per reported total
    subtotal = Decimal(0)
    for item in line_items:
        subtotal += _apply_discount(Decimal(item.quantity) * Decimal(item.unit_price), item.discount)

    discount_amount = Decimal(0)
    if discount is not None and discount.value > 0:
        value = Decimal(str(discount.value))
        if discount.type == "percentage":
            discount_amount = subtotal * value / HUNDRED
        else:
            discount_amount = min(subtotal, value)

    after_discount = subtotal - discount_amount

    tax_amount = Decimal(0)
    for tax in taxes or []:
        if not tax.inclusive:
            tax_amount += after_discount * Decimal(str(tax.rate)) / HUNDRED

    total = round_minor(after_discount + tax_amount)
    return InvoiceSummary(
        subtotal=round_minor(subtotal),
        discount_amount=round_minor(discount_amount),
        tax_amount=round_minor(tax_amount),
        total=total,
        amount_paid=0,
        amount_due=total,
        credits=0,
    )


def add_months(moment, months):
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp Jan 31 + 1 month to the end of February
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _advance(moment, frequency, steps):
    if frequency == "weekly":
        return moment + timedelta(days=7 * steps)
    if frequency == "biweekly":
        return moment + timedelta(days=14 * steps)
    if frequency == "monthly":
        return add_months(moment, steps)
    raise ValueError(f"Unknown payment plan frequency: {frequency}")


def split_installments(remaining, count):
    """Ceil-sized installments with the final one absorbing the remainder.

    Falls back to floor-sized installments when the ceil split would leave the
    last installment at zero or below (e.g. 5 over 4 payments).
    """
    if count < 1:
        raise ValueError("number_of_payments must be at least 1")
    size = -(-remaining // count)
    last = remaining - size * (count - 1)
    if last <= 0 < remaining:
        size = remaining // count
        last = remaining - size * (count - 1)
    return [size] * (count - 1) + [last]


def build_payment_schedule(plan):
    schedule = []
    if plan.down_payment > 0:
        schedule.append(Installment(number=0, amount=plan.down_payment,
                                    due_date=plan.start_date, type="down_payment"))

    remaining = plan.total_amount - plan.down_payment
    amounts = split_installments(remaining, plan.number_of_payments)
    for index, amount in enumerate(amounts):
        schedule.append(Installment(number=index + 1, amount=amount,
                                    due_date=_advance(plan.start_date, plan.frequency, index)))
    return schedule
