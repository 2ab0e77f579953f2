from enum import StrEnum


class BillingStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    BILLED = "billed"


class ProfileRole(StrEnum):
    CLIENT = "client"
    DESIGNER = "designer"
