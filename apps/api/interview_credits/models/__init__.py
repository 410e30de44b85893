# Import all models so Base.metadata is complete for Alembic and create_all
from interview_credits.models.billing import AccountBalance, CreditRule, CreditTransaction, CreditUsageLog  # noqa: F401
from interview_credits.models.interview_sessions import InterviewSession  # noqa: F401
