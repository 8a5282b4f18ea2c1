"""Registration stages, transform chains and resampling backends."""

from .executor import run_registration
from .services import (
    InterpolationMode,
    RegistrationRequest,
    RegistrationService,
    ResampleRequest,
    ResamplingService,
    RunContext,
)
from .stages import RegistrationSettings, StageDescriptor, TransformFamily, plan_stages
from .transforms import (
    AffineStep,
    ComposedTransform,
    TransformHandle,
    compose,
    identity_transform,
    locate_template_transform,
)

__all__ = [
    "AffineStep",
    "ComposedTransform",
    "InterpolationMode",
    "RegistrationRequest",
    "RegistrationService",
    "RegistrationSettings",
    "ResampleRequest",
    "ResamplingService",
    "RunContext",
    "StageDescriptor",
    "TransformFamily",
    "TransformHandle",
    "compose",
    "identity_transform",
    "locate_template_transform",
    "plan_stages",
    "run_registration",
]
