"""Data portability reference service"""

from mutation_kernel.services.portability.models import (
    CreateExportInput,
    EraseInput,
    ExportRequest,
    ExportStatus,
    RequestType,
)
from mutation_kernel.services.portability.service import (
    PortabilityService,
    register_portability_events,
)

__all__ = [
    "CreateExportInput",
    "EraseInput",
    "ExportRequest",
    "ExportStatus",
    "PortabilityService",
    "RequestType",
    "register_portability_events",
]
