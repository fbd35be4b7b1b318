"""User-facing messages, keyed by error code and locale."""
from typing import Dict, Optional, Tuple

from payment_orchestrator.config import get_settings

MESSAGES: Dict[str, Dict[str, str]] = {
    "ORDER_NOT_FOUND": {
        "fa": "سفارش یافت نشد",
        "en": "Order not found",
    },
    "ORDER_ALREADY_PAID": {
        "fa": "این سفارش قبلاً پرداخت شده است",
        "en": "This order has already been paid",
    },
    "INVALID_PAYMENT_METHOD": {
        "fa": "این سفارش برای پرداخت آنلاین نیست",
        "en": "This order is not payable online",
    },
    "PAYMENT_NOT_FOUND": {
        "fa": "پرداخت یافت نشد",
        "en": "Payment not found",
    },
    "INVALID_CALLBACK": {
        "fa": "داده‌های بازگشتی از درگاه نامعتبر است",
        "en": "The gateway callback is invalid",
    },
    "INVALID_STATE": {
        "fa": "وضعیت پرداخت اجازه این عملیات را نمی‌دهد",
        "en": "The payment is not in a state that allows this operation",
    },
    "REFUND_NOT_ALLOWED": {
        "fa": "فقط پرداخت‌های موفق قابل بازگشت هستند",
        "en": "Only completed payments can be refunded",
    },
    "INVALID_REFUND_AMOUNT": {
        "fa": "مبلغ بازگشت نامعتبر است",
        "en": "The refund amount is invalid",
    },
    "UNKNOWN_GATEWAY": {
        "fa": "درگاه پرداخت نامعتبر است",
        "en": "Unknown payment gateway",
    },
    "GATEWAY_MISCONFIGURED": {
        "fa": "درگاه پرداخت در دسترس نیست",
        "en": "The payment gateway is not available",
    },
    "AUTH_FAILURE": {
        "fa": "درگاه پرداخت در دسترس نیست",
        "en": "The payment gateway is not available",
    },
    "BUSINESS_REJECTED": {
        "fa": "پرداخت توسط درگاه رد شد",
        "en": "The payment was declined by the gateway",
    },
    "TRANSPORT": {
        "fa": "خطا در اتصال به درگاه پرداخت. لطفاً دوباره تلاش کنید",
        "en": "Could not reach the payment gateway. Please try again",
    },
    "REFUND_FAILED": {
        "fa": "خطا در بازگشت وجه",
        "en": "The refund could not be completed",
    },
    "INCONSISTENT_STATE": {
        "fa": "پرداخت نیاز به بررسی پشتیبانی دارد",
        "en": "This payment needs to be reviewed by support",
    },
    "UNKNOWN": {
        "fa": "خطای نامشخص در پرداخت",
        "en": "An unexpected payment error occurred",
    },
    "VERIFIED": {
        "fa": "پرداخت با موفقیت تایید شد",
        "en": "Payment verified",
    },
    "ALREADY_SETTLED": {
        "fa": "پرداخت قبلاً تایید شده است",
        "en": "Payment was already verified",
    },
    "VERIFICATION_PENDING": {
        "fa": "نتیجه پرداخت هنوز مشخص نیست. لطفاً بعداً بررسی کنید",
        "en": "The payment outcome is not known yet. Please check again later",
    },
    "PAYMENT_FAILED": {
        "fa": "پرداخت ناموفق بود",
        "en": "Payment failed",
    },
}


# Provider codes worth a more specific message than the generic rejection
GATEWAY_MESSAGES: Dict[Tuple[str, str], Dict[str, str]] = {
    ("zarinpal", "-9"): {
        "fa": "حداقل مبلغ پرداخت ۱٬۰۰۰ تومان است.",
        "en": "The minimum payment amount is 1,000 toman.",
    },
    ("zarinpal", "-12"): {
        "fa": "تعداد درخواست‌ها زیاد است. لطفاً چند دقیقه دیگر دوباره تلاش کنید.",
        "en": "Too many requests. Please try again in a few minutes.",
    },
    ("zarinpal", "-50"): {
        "fa": "مبلغ پرداخت شده با مبلغ سفارش مطابقت ندارد.",
        "en": "The paid amount does not match the order amount.",
    },
    ("zarinpal", "NOT_SUPPORTED"): {
        "fa": "بازگشت وجه برای این درگاه پشتیبانی نمی‌شود.",
        "en": "Refunds are not supported for this gateway.",
    },
}


def gateway_message(
    gateway: str, gateway_code: Optional[str], locale: Optional[str] = None
) -> Optional[str]:
    """Specific message for a provider error code, if one is known."""
    if gateway_code is None:
        return None
    entry = GATEWAY_MESSAGES.get((gateway, gateway_code))
    if entry is None:
        return None
    locale = locale or get_settings().default_locale
    return entry.get(locale) or entry["en"]


def localized_message(code: str, locale: Optional[str] = None) -> str:
    """
    Return the user-facing text for an error or outcome code.

    Unknown codes fall back to the generic ``UNKNOWN`` message.
    """
    locale = locale or get_settings().default_locale
    entry = MESSAGES.get(code) or MESSAGES["UNKNOWN"]
    return entry.get(locale) or entry["en"]
