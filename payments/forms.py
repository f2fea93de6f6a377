from django import forms

from .models import Payment


class PaymentCreateForm(forms.Form):
    planType = forms.ChoiceField(
        choices=Payment.PlanType.choices,
        error_messages={"required": "プランを選択してください", "invalid_choice": "無効なプランです"},
    )
    paymentMethod = forms.ChoiceField(
        choices=Payment.Method.choices,
        error_messages={"required": "支払い方法を選択してください", "invalid_choice": "無効な支払い方法です"},
    )
    name = forms.CharField(max_length=255, error_messages={"required": "氏名を入力してください"})
    email = forms.EmailField(
        error_messages={
            "required": "メールアドレスを入力してください",
            "invalid": "有効なメールアドレスを入力してください",
        },
    )
    phoneNumber = forms.CharField(max_length=32, error_messages={"required": "電話番号を入力してください"})
    companyName = forms.CharField(required=False, max_length=255)
    postalCode = forms.CharField(required=False, max_length=16)
    address = forms.CharField(required=False, max_length=255)
    seller = forms.CharField(required=False, max_length=120)
    amount = forms.DecimalField(max_digits=10, decimal_places=2, min_value=0, error_messages={"required": "金額が必要です"})
    taxAmount = forms.DecimalField(max_digits=10, decimal_places=2, min_value=0, error_messages={"required": "消費税額が必要です"})
    totalAmount = forms.DecimalField(required=False, max_digits=10, decimal_places=2, min_value=0)


class ChargeForm(forms.Form):
    paymentId = forms.UUIDField(error_messages={"required": "Payment ID is required", "invalid": "Invalid payment ID"})
    transaction_token_id = forms.CharField(max_length=64, error_messages={"required": "Transaction token ID is required"})
    redirect_endpoint = forms.URLField(required=False, assume_scheme="https")
