from backend.app.db.base_class import Base

# Import models to register metadata for Base.metadata.create_all in tests
from backend.app.models.payment import InstallmentRecord, PaymentRecord  # noqa: F401
