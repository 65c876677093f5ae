from app.models.base import Base
from app.models.scan import Scan, ScanFinding, ScanJob, ScanJobState

__all__ = [
    "Base",
    "Scan", "ScanFinding", "ScanJob", "ScanJobState",
]
