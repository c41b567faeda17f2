import os
import sys
from pathlib import Path

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("API_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENTITLEMENT_BACKEND", "memory")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("GUEST_COOKIE_SECURE", "false")
os.environ.setdefault("FREE_LIMIT", "15")
os.environ.setdefault(
    "PLAN_CATALOG",
    '{"price_monthly":{"slug":"monthly_essential","name":"Monthly Essential"},'
    '"price_yearly":{"slug":"yearly_unlimited","name":"Yearly Unlimited"}}',
)

# Ensure the repo root is on sys.path so "import astralis_api" works without an install.
API_ROOT = Path(__file__).resolve().parent
if str(API_ROOT) not in sys.path:
    sys.path.insert(0, str(API_ROOT))
