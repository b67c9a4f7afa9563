"""
Price-drop alert decision.

A competitor triggers an alert when it undercuts the own price by at least
the configured percentage. The evaluator only decides and formats; sending
is the NotificationSender's job.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from competitor_intel.models.schemas import Notification, normalize_price
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)

Number = Union[Decimal, int, float, str]

_TWO_PLACES = Decimal("0.01")

SUBJECT_TEMPLATE = "Price Alert: {entity} is cheaper at {competitor}"

BODY_TEMPLATE = """Alert!

Your Product: {entity}
Your Price: {own_price}

Competitor: {competitor}
Competitor Price: {competitor_price}
Difference: {diff_pct}%

Login to view details."""


def _as_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, int):
        return Decimal(value)
    return normalize_price(value)


class PriceAlertEvaluator:
    """Decide whether a competitor price warrants a notification."""

    def evaluate(
        self,
        own_price: Number,
        competitor_name: str,
        competitor_price: Number,
        threshold_pct: Number,
        notify_email: str,
        entity_name: str = "",
    ) -> Optional[Notification]:
        """
        Evaluate one competitor observation.

        Args:
            own_price: Price of the analyzed entity.
            competitor_name: Display name of the competitor.
            competitor_price: Normalized competitor price.
            threshold_pct: Minimum undercut percentage that raises an alert.
            notify_email: Recipient; no alert is produced when empty.
            entity_name: Entity name used in the subject and body.

        Returns:
            Notification when the competitor is cheaper by at least
            ``threshold_pct`` percent, otherwise None.
        """
        if not notify_email:
            return None

        own = _as_decimal(own_price)
        if own <= 0:
            return None

        competitor = _as_decimal(competitor_price)
        threshold = _as_decimal(threshold_pct)

        diff_pct = (own - competitor) / own * Decimal(100)
        if diff_pct < threshold:
            return None

        rounded = diff_pct.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)

        logger.info(
            "Price alert triggered",
            competitor=competitor_name,
            own_price=str(own),
            competitor_price=str(competitor),
            diff_pct=str(rounded),
        )

        return Notification(
            to=notify_email,
            subject=SUBJECT_TEMPLATE.format(entity=entity_name, competitor=competitor_name),
            body=BODY_TEMPLATE.format(
                entity=entity_name,
                own_price=own,
                competitor=competitor_name,
                competitor_price=competitor,
                diff_pct=rounded,
            ),
            diff_pct=rounded,
        )
