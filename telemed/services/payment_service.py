import logging

import midtransclient
import requests

logger = logging.getLogger(__name__)

PAID_STATUSES = ('capture', 'settlement')

# Error API Midtrans + error transport (koneksi putus, timeout)
GATEWAY_ERRORS = (midtransclient.error_midtrans.MidtransAPIError, requests.exceptions.RequestException)


class PaymentService:
    def __init__(self, server_key=None, is_production=False):
        self.snap = midtransclient.Snap(
            is_production=is_production,
            server_key=server_key
        )

    def init_app(self, app):
        self.snap = midtransclient.Snap(
            is_production=app.config.get('MIDTRANS_IS_PRODUCTION', False),
            server_key=app.config.get('MIDTRANS_SERVER_KEY')
        )

    def create_transaction(self, order_id, amount, customer_details=None):
        """
        Minta link pembayaran ke Midtrans (Snap)
        """
        param = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": amount
            },
            "credit_card": {
                "secure": True
            },
            "customer_details": customer_details or {}
        }

        try:
            # Isinya: {'token': '...', 'redirect_url': '...'}
            return self.snap.create_transaction(param)
        except GATEWAY_ERRORS:
            logger.exception("Midtrans create_transaction failed for %s", order_id)
            return None

    def is_paid(self, order_id):
        """Sinyal boolean 'pembayaran terverifikasi' untuk finalize slot."""
        try:
            status = self.snap.transactions.status(order_id)
        except GATEWAY_ERRORS:
            logger.exception("Midtrans status check failed for %s", order_id)
            return False

        transaction_status = status.get('transaction_status')
        fraud_status = status.get('fraud_status')
        if transaction_status == 'capture' and fraud_status == 'challenge':
            return False
        return transaction_status in PAID_STATUSES


payment_service = PaymentService()
