from .base import Base
from .organization import Organization
from .user import RefreshToken, User
from .audit import AuditLog
from .framework import Framework, FrameworkVersion, OrgFramework, Requirement, RequirementScope
from .control import Control, ControlMapping
from .risk import Risk, RiskAssessment, RiskControl, RiskTreatment
from .test import Test, TestResult, TestRun
from .alert import Alert, AlertRule
