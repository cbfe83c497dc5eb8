"""
Error taxonomy shared by every engine.

Services raise a ``PosError`` subclass carrying a stable machine-readable code;
the exception handler in ``poscore.core.exception_handlers`` renders it into the
error envelope with the bilingual messages below.
"""
from typing import Any, Optional

from fastapi import status

# code -> (english, arabic)
MESSAGES = {
    "not_authorized": ("You are not authorized to perform this action.", "غير مصرح لك بتنفيذ هذا الإجراء."),
    "restaurant_mismatch": ("This record belongs to a different restaurant.", "هذا السجل يتبع لمطعم آخر."),
    "missing_fields": ("Required fields are missing.", "هناك حقول مطلوبة مفقودة."),
    "invalid_payment_method": ("Payment method is not allowed.", "طريقة الدفع غير مسموحة."),
    "invalid_amount": ("Amount must be greater than zero.", "يجب أن يكون المبلغ أكبر من صفر."),
    "invalid_quantity": ("Quantity must be greater than zero.", "يجب أن تكون الكمية أكبر من صفر."),
    "invalid_txn_type": ("Invalid transaction type.", "نوع الحركة غير صالح."),
    "invalid_branch": ("Invalid branch.", "الفرع غير صالح."),
    "invalid_item": ("Invalid inventory item.", "صنف المخزون غير صالح."),
    "invalid_unit": ("Invalid unit.", "وحدة القياس غير صالحة."),
    "invalid_supplier":("Invalid supplier.", "المورد غير صالح."),
    "same_branch": ("Source and destination branches must differ.", "يجب أن يختلف الفرع المصدر عن الفرع الوجهة."),
    "inventory_disabled": ("Inventory module is not enabled for this restaurant.", "وحدة المخزون غير مفعلة لهذا المطعم."),
    "order_not_found": ("Order not found.", "الطلب غير موجود."),
    "orders_not_found": ("Some orders were not found.", "بعض الطلبات غير موجودة."),
    "mixed_restaurants": ("Orders must belong to the same restaurant.", "يجب أن تتبع الطلبات لنفس المطعم."),
    "order_not_open": ("Order is not open for payment.", "الطلب غير مفتوح للدفع."),
    "card_overpayment": ("Card payments must be exact. No overpayment allowed.", "يجب أن تكون مدفوعات البطاقة مطابقة تماماً دون زيادة."),
    "underpayment": ("Payment total is less than the order total.", "مجموع الدفع أقل من مجموع الطلب."),
    "race_condition": ("Order was changed by another request. Please retry.", "تم تعديل الطلب من طلب آخر. يرجى المحاولة مجدداً."),
    "payment_failed": ("Failed to record payments.", "فشل تسجيل المدفوعات."),
    "insufficient_stock": ("Insufficient stock.", "المخزون غير كافٍ."),
    "count_not_found": ("Stock count not found.", "الجرد غير موجود."),
    "count_immutable": ("Stock count is already approved or cancelled.", "الجرد معتمد أو ملغي مسبقاً."),
    "no_count_lines": ("Stock count has no lines.", "لا توجد أسطر في الجرد."),
    "order_not_refundable": ("Only paid orders can be refunded.", "يمكن استرجاع الطلبات المدفوعة فقط."),
    "invalid_refund_type": ("Refund type must be 'full' or 'partial'.", "نوع الاسترجاع يجب أن يكون كاملاً أو جزئياً."),
    "refund_exceeds_available": ("Refund exceeds the refundable amount.", "مبلغ الاسترجاع يتجاوز المبلغ المتاح."),
    "refund_failed": ("Failed to create refund record.", "فشل إنشاء سجل الاسترجاع."),
    "SUBSCRIPTION_EXPIRED": ("Your subscription has expired. Please renew to continue.", "انتهى اشتراكك. يرجى التجديد للمتابعة."),
}


class PosError(Exception):
    """Base for every rejection an engine can return to its caller."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: Optional[str] = None,
                 details: Any = None, status_code: Optional[int] = None):
        self.code = code
        self.message_en, self.message_ar = MESSAGES.get(code, (code, code))
        self.message = message or self.message_en
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(f"{code}: {self.message}")

    def to_dict(self) -> dict:
        body = {
            "code": self.code,
            "message": self.message,
            "message_en": self.message_en,
            "message_ar": self.message_ar,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthorizationError(PosError):
    status_code = status.HTTP_403_FORBIDDEN


class ValidationFailed(PosError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(PosError):
    status_code = status.HTTP_404_NOT_FOUND


class BusinessRuleError(PosError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(PosError):
    """Retryable: the conditional write lost against a concurrent request."""
    status_code = status.HTTP_409_CONFLICT


class ServerError(PosError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class SubscriptionExpired(PosError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self):
        super().__init__("SUBSCRIPTION_EXPIRED")
