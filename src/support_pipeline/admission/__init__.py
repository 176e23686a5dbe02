"""Credit admission control."""

from support_pipeline.admission.controller import AdmissionController

__all__ = ["AdmissionController"]
