import os

# Must be set before common.settings is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ECPAY_MODE", "stage")
os.environ.setdefault("ECPAY_MERCHANT_ID", "3002607")
os.environ.setdefault("ECPAY_HASH_KEY", "pwFHCqoQZGmho4w6")
os.environ.setdefault("ECPAY_HASH_IV", "EkRm7iFT261dpevs")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.setdefault("EMAIL_FROM", "noreply@example.com")
os.environ.setdefault("MAILCHANNELS_API_KEY", "test-key")
