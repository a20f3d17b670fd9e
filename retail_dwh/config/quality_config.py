"""Data Quality configuration"""
import os

# Gate status thresholds (share of records passing)
DQ_SUCCESS_THRESHOLD = float(os.getenv("DQ_SUCCESS_THRESHOLD", "0.90"))
DQ_WARNING_THRESHOLD = float(os.getenv("DQ_WARNING_THRESHOLD", "0.70"))

# Record-level rule parameters
DQ_AMOUNT_TOLERANCE = float(os.getenv("DQ_AMOUNT_TOLERANCE", "0.01"))
DQ_MIN_QUANTITY = int(os.getenv("DQ_MIN_QUANTITY", "1"))
DQ_MAX_QUANTITY = int(os.getenv("DQ_MAX_QUANTITY", "1000"))
DQ_VALID_PAYMENT_METHODS = tuple(
    os.getenv("DQ_VALID_PAYMENT_METHODS", "CREDIT_CARD,DEBIT_CARD,CASH,PAYPAL").split(",")
)
