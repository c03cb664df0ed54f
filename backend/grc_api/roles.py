"""GRC roles and the role sets allowed to perform each privileged action."""

CISO = "ciso"
COMPLIANCE_MANAGER = "compliance_manager"
SECURITY_ENGINEER = "security_engineer"
IT_ADMIN = "it_admin"
DEVOPS_ENGINEER = "devops_engineer"
AUDITOR = "auditor"
VENDOR_MANAGER = "vendor_manager"
VIEWER = "viewer"

ROLES = (
    CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN,
    DEVOPS_ENGINEER, AUDITOR, VENDOR_MANAGER, VIEWER,
)

REGISTRATION_ROLE = COMPLIANCE_MANAGER

ADMIN = (CISO, COMPLIANCE_MANAGER)
USER_CREATE = (CISO, COMPLIANCE_MANAGER, IT_ADMIN)
USER_UPDATE = USER_CREATE
AUDIT_VIEW = (CISO, COMPLIANCE_MANAGER, AUDITOR)

ORG_FRAMEWORK = ADMIN
CONTROL_MANAGE = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER)

RISK_MANAGE = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER)
RISK_ACCEPT = ADMIN
RISK_ARCHIVE = ADMIN
RISK_GAP_VIEW = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, AUDITOR)

TEST_CREATE = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, DEVOPS_ENGINEER)
TEST_STATUS = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER)
TEST_DELETE = ADMIN
TEST_RUN_CREATE = TEST_CREATE
TEST_RUN_CANCEL = TEST_STATUS

ALERT_STATUS = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN, DEVOPS_ENGINEER)
ALERT_RESOLVE = ALERT_STATUS
ALERT_ASSIGN = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER)
ALERT_DELIVERY = ALERT_ASSIGN
ALERT_SUPPRESS = ADMIN
ALERT_CLOSE = ADMIN
ALERT_TEST_DELIVERY = ADMIN
ALERT_RULE_VIEW = (CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER)
ALERT_RULE_MANAGE = ADMIN


def has_role(role: str, allowed: tuple[str, ...]) -> bool:
    return role in allowed
