"""
CheckMacValue golden fixtures and checkout form building
"""
import unittest
from datetime import datetime

from common.error_handling import GatewayNotConfigured, InvalidAmount, SignatureMismatch
from common.settings import Settings
from points_service.ecpay import (
    PROD_CASHIER_URL, STAGE_CASHIER_URL, CheckoutParams, EcpayCredentials, build_checkout_form,
    cashier_url, compute_check_mac_value, encode_for_signature, format_trade_date, generate_trade_no,
    get_credentials, require_valid_signature, round_amount, verify_check_mac_value, GATEWAY_TZ,
)
from tests.support import HASH_IV, HASH_KEY, MERCHANT_ID

CHECKOUT_SAMPLE = {
    "ChoosePayment": "ALL",
    "EncryptType": "1",
    "ItemName": "Apple iphone 15",
    "MerchantID": "3002607",
    "MerchantTradeDate": "2023/03/12 15:30:23",
    "MerchantTradeNo": "ecpay20230312153023",
    "PaymentType": "aio",
    "ReturnURL": "https://www.ecpay.com.tw/receive.php",
    "TotalAmount": "30000",
    "TradeDesc": "促銷方案",
}
CHECKOUT_SAMPLE_MAC = "6C51C9E6888DE861FD62FB1DD17029FC742634498FD813DC43D4243B5685B840"

NOTIFY_SAMPLE = {
    "CustomField1": "acct-1",
    "CustomField2": "1000",
    "CustomField3": "500",
    "MerchantID": "3002607",
    "MerchantTradeNo": "RG202610191200001234",
    "PaymentDate": "2026/10/19 12:05:00",
    "PaymentType": "Credit_CreditCard",
    "PaymentTypeChargeFee": "15",
    "RtnCode": "1",
    "RtnMsg": "交易成功",
    "SimulatePaid": "0",
    "StoreID": "",
    "TradeAmt": "500",
    "TradeDate": "2026/10/19 12:00:00",
    "TradeNo": "2610191200123456",
}
NOTIFY_SAMPLE_MAC = "DA307BB75DAAFCF0B4D0FE5E3D3B029958DDEA2955A434E4D26B5B47EF31489C"

PAYMENT_INFO_SAMPLE = {
    "BankCode": "812",
    "ExpireDate": "2026/10/22",
    "MerchantID": "3002607",
    "MerchantTradeNo": "RG202610191200001234",
    "PaymentType": "ATM_TAISHIN",
    "RtnCode": "2",
    "RtnMsg": "Get VirtualAccount Succeeded",
    "StoreID": "",
    "TradeAmt": "500",
    "TradeDate": "2026/10/19 12:00:00",
    "TradeNo": "2610191200123456",
    "vAccount": "9103522175887271",
}
PAYMENT_INFO_SAMPLE_MAC = "F45341A081CA13AFC5BD5E23A21B581FA87B332E0B29AEFC8370C441D57E33D9"

TILDE_SAMPLE = {
    "ItemName": "pack~1000",
    "MerchantID": "3002607",
    "MerchantTradeNo": "RG202610191200001234",
    "TotalAmount": "500",
}
TILDE_SAMPLE_MAC = "EAC7202588B71172D479DC0DF175C712547344CE5FF723C90D0F9B3946ECAA1E"

CREDENTIALS = EcpayCredentials(MERCHANT_ID, HASH_KEY, HASH_IV, "stage")


class TestCheckMacValue(unittest.TestCase):

    def test_gateway_published_sample(self):
        """Matches the checksum published with the gateway's integration guide"""
        self.assertEqual(compute_check_mac_value(CHECKOUT_SAMPLE, HASH_KEY, HASH_IV), CHECKOUT_SAMPLE_MAC)

    def test_notify_fixture(self):
        self.assertEqual(compute_check_mac_value(NOTIFY_SAMPLE, HASH_KEY, HASH_IV), NOTIFY_SAMPLE_MAC)

    def test_payment_info_fixture(self):
        """Lower-case keys such as vAccount sort case-insensitively"""
        self.assertEqual(compute_check_mac_value(PAYMENT_INFO_SAMPLE, HASH_KEY, HASH_IV), PAYMENT_INFO_SAMPLE_MAC)

    def test_tilde_is_escaped(self):
        """A "~" in any field is signed as %7e"""
        self.assertEqual(compute_check_mac_value(TILDE_SAMPLE, HASH_KEY, HASH_IV), TILDE_SAMPLE_MAC)
        self.assertTrue(verify_check_mac_value(dict(TILDE_SAMPLE, CheckMacValue=TILDE_SAMPLE_MAC), HASH_KEY, HASH_IV))

    def test_signature_field_is_ignored(self):
        signed = dict(CHECKOUT_SAMPLE, CheckMacValue="anything")
        self.assertEqual(compute_check_mac_value(signed, HASH_KEY, HASH_IV), CHECKOUT_SAMPLE_MAC)

    def test_field_order_does_not_matter(self):
        shuffled = dict(reversed(list(NOTIFY_SAMPLE.items())))
        self.assertEqual(compute_check_mac_value(shuffled, HASH_KEY, HASH_IV), NOTIFY_SAMPLE_MAC)

    def test_verify_accepts_either_case(self):
        self.assertTrue(verify_check_mac_value(dict(NOTIFY_SAMPLE, CheckMacValue=NOTIFY_SAMPLE_MAC), HASH_KEY, HASH_IV))
        self.assertTrue(verify_check_mac_value(dict(NOTIFY_SAMPLE, CheckMacValue=NOTIFY_SAMPLE_MAC.lower()),
                                               HASH_KEY, HASH_IV))

    def test_tampered_amount_fails(self):
        """Changing TotalAmount after signing breaks verification"""
        tampered = dict(CHECKOUT_SAMPLE, CheckMacValue=CHECKOUT_SAMPLE_MAC, TotalAmount="1")
        self.assertFalse(verify_check_mac_value(tampered, HASH_KEY, HASH_IV))
        with self.assertRaises(SignatureMismatch):
            require_valid_signature(tampered, CREDENTIALS)

    def test_missing_or_garbage_signature_fails(self):
        self.assertFalse(verify_check_mac_value(NOTIFY_SAMPLE, HASH_KEY, HASH_IV))
        self.assertFalse(verify_check_mac_value(dict(NOTIFY_SAMPLE, CheckMacValue="交易"), HASH_KEY, HASH_IV))

    def test_wrong_key_fails(self):
        signed = dict(NOTIFY_SAMPLE, CheckMacValue=NOTIFY_SAMPLE_MAC)
        self.assertFalse(verify_check_mac_value(signed, "otherkey", HASH_IV))

    def test_encoding_table(self):
        self.assertEqual(encode_for_signature("a b!()*-._"), "a+b!()*-._")
        self.assertEqual(encode_for_signature("~"), "%7e")
        self.assertEqual(encode_for_signature("https://x/y?z=1&w"), "https%3a%2f%2fx%2fy%3fz%3d1%26w")
        self.assertEqual(encode_for_signature("Ä'@"), "%c3%84%27%40")


class TestCheckoutForm(unittest.TestCase):

    def params(self, **overrides):
        values = dict(
            total_amount=500,
            description="Recharge order",
            item_name="Points 1000",
            return_url="http://testserver/recharge/ecpay/notify",
            client_back_url="http://testserver/recharge",
            order_result_url="http://testserver/recharge/ecpay/order-result",
            custom_fields=("acct-1", "1000", "500"),
            trade_no="RG202610191200001234",
            trade_date=datetime(2026, 10, 19, 12, 0, 0, tzinfo=GATEWAY_TZ),
        )
        values.update(overrides)
        return CheckoutParams(**values)

    def test_credit_form(self):
        checkout = build_checkout_form(self.params(), CREDENTIALS)
        form = checkout.form

        self.assertEqual(checkout.action, STAGE_CASHIER_URL)
        self.assertEqual(checkout.merchant_trade_no, "RG202610191200001234")
        self.assertEqual(form["MerchantID"], MERCHANT_ID)
        self.assertEqual(form["MerchantTradeDate"], "2026/10/19 12:00:00")
        self.assertEqual(form["PaymentType"], "aio")
        self.assertEqual(form["TotalAmount"], "500")
        self.assertEqual(form["ChoosePayment"], "Credit")
        self.assertEqual(form["NeedExtraPaidInfo"], "N")
        self.assertEqual(form["EncryptType"], "1")
        self.assertEqual((form["CustomField1"], form["CustomField2"], form["CustomField3"]),
                         ("acct-1", "1000", "500"))
        self.assertNotIn("PaymentInfoURL", form)
        self.assertNotIn("ClientRedirectURL", form)
        self.assertTrue(verify_check_mac_value(form, HASH_KEY, HASH_IV))

    def test_atm_form_carries_payment_info_urls(self):
        form = build_checkout_form(self.params(
            payment_method="ATM",
            payment_info_url="http://testserver/recharge/ecpay/payment-info",
            client_redirect_url="http://testserver/recharge/payment-info",
        ), CREDENTIALS).form

        self.assertEqual(form["NeedExtraPaidInfo"], "Y")
        self.assertEqual(form["PaymentInfoURL"], "http://testserver/recharge/ecpay/payment-info")
        self.assertTrue(verify_check_mac_value(form, HASH_KEY, HASH_IV))

    def test_production_cashier(self):
        self.assertEqual(cashier_url("production"), PROD_CASHIER_URL)
        self.assertEqual(cashier_url("stage"), STAGE_CASHIER_URL)

    def test_non_positive_amount(self):
        with self.assertRaises(InvalidAmount):
            build_checkout_form(self.params(total_amount=0), CREDENTIALS)

    def test_trade_numbers(self):
        moment = datetime(2026, 10, 19, 12, 0, 0, tzinfo=GATEWAY_TZ)
        trade_no = generate_trade_no(moment)

        self.assertEqual(len(trade_no), 20)
        self.assertTrue(trade_no.startswith("RG20261019120000"))
        self.assertTrue(trade_no[2:].isdigit())
        self.assertEqual(format_trade_date(moment), "2026/10/19 12:00:00")

    def test_round_amount(self):
        self.assertEqual(round_amount(499.5), 500)
        self.assertEqual(round_amount("120.4"), 120)
        for bad in (0, -3, "abc", float("nan"), float("inf"), 0.2):
            with self.assertRaises(InvalidAmount, msg=f"amount={bad!r}"):
                round_amount(bad)

    def test_missing_credentials(self):
        with self.assertRaises(GatewayNotConfigured):
            get_credentials(Settings(ecpay_merchant_id="", ecpay_hash_key="", ecpay_hash_iv=""))


if __name__ == "__main__":
    unittest.main()
