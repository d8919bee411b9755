"""
Return-URL contract of the external checkout.

    /app?session_id=cs_test_123&status=success   ->  reconcile cs_test_123
    /app?status=success                          ->  one plan sync
    /app?status=cancelled                        ->  nothing to do

Only ``status`` and ``session_id`` are read. Any ``simulated`` flag is
ignored: success parameters alone never upgrade a plan.
"""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from botanicmd.models.billing import CheckoutRedirect, CheckoutStatus

CHECKOUT_PARAMS = ("session_id", "status", "simulated")

_STATUS_ALIASES = {
    "success": CheckoutStatus.SUCCESS,
    "cancelled": CheckoutStatus.CANCELLED,
    "canceled": CheckoutStatus.CANCELLED,
}


def parse_checkout_redirect(url: str) -> CheckoutRedirect | None:
    """Return the checkout signature carried by ``url``, or None if absent."""
    params = dict(parse_qsl(urlsplit(url).query))
    status = _STATUS_ALIASES.get(params.get("status", "").strip().lower())
    if status is None:
        return None

    session_id = params.get("session_id", "").strip() or None
    if status == CheckoutStatus.CANCELLED:
        session_id = None
    return CheckoutRedirect(status=status, session_id=session_id)


def strip_checkout_params(url: str) -> str:
    """Remove checkout parameters so a reload cannot re-trigger reconciliation."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in CHECKOUT_PARAMS]
    return urlunsplit(parts._replace(query=urlencode(kept)))
