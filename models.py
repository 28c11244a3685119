from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint

from db import Base


class StaffAccount(Base):
    __tablename__ = "staff_accounts"

    userId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, unique=True, index=True)
    passwordHash = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=False, default="")
    isActive = Column(Boolean, nullable=False, default=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Outlet(Base):
    __tablename__ = "outlets"

    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(Text, nullable=False, default="")
    # Outlet logins act as the store manager principal for this outlet.
    email = Column(String, nullable=False, unique=True, index=True)
    passwordHash = Column(Text, nullable=False, default="")
    address = Column(Text, nullable=False, default="")
    city = Column(String, nullable=False, default="", index=True)
    state = Column(String, nullable=False, default="")
    pincode = Column(String, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    # Single source of truth for coach/manager assignment; per-staff outlet sets are derived.
    managerId = Column(String, nullable=True, index=True)
    fieldCoachId = Column(String, nullable=True, index=True)
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class RoleDefinition(Base):
    __tablename__ = "role_definitions"

    id = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    category = Column(String, nullable=False, default="employee")
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Onboarding(Base):
    __tablename__ = "onboardings"

    id = Column(String, primary_key=True)
    # Minted on first approval only; NULL until then.
    employeeKey = Column(String, nullable=True, unique=True, index=True)

    fullName = Column(Text, nullable=False, default="")
    phone = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="", index=True)
    gender = Column(String, nullable=False, default="")
    dob = Column(String, nullable=False, default="")
    aadhaarNumber = Column(String, nullable=False, default="", index=True)
    panNumber = Column(String, nullable=False, default="")
    designation = Column(Text, nullable=False, default="")
    dateOfJoining = Column(String, nullable=False, default="")
    # Remaining free-form personal/education/experience fields.
    profileJson = Column(Text, nullable=False, default="{}")

    aadhaarVerified = Column(Boolean, nullable=False, default=False)
    panVerified = Column(Boolean, nullable=False, default=False)
    phoneOtpVerified = Column(Boolean, nullable=False, default=False)
    emailOtpVerified = Column(Boolean, nullable=False, default=False)
    aadhaarProfileJson = Column(Text, nullable=False, default="{}")

    documentsJson = Column(Text, nullable=False, default="{}")

    outletId = Column(String, nullable=True, index=True)
    role = Column(String, nullable=False, default="", index=True)
    fieldCoachEmail = Column(String, nullable=False, default="")

    status = Column(String, nullable=False, default="draft", index=True)
    employeeStatus = Column(String, nullable=False, default="active", index=True)
    currentStep = Column(Integer, nullable=False, default=1)
    rowVersion = Column(Integer, nullable=False, default=1)

    submittedAt = Column(Text, nullable=True)
    approvedBy = Column(String, nullable=True)
    approvalDate = Column(Text, nullable=True)
    rejectedBy = Column(String, nullable=True)
    rejectionReason = Column(Text, nullable=True)
    rejectionDate = Column(Text, nullable=True)

    deactivationReason = Column(Text, nullable=True)
    deactivationRequestedBy = Column(String, nullable=True)
    deactivationRequestedAt = Column(Text, nullable=True)
    deactivationApprovedBy = Column(String, nullable=True)
    deactivationApprovedAt = Column(Text, nullable=True)
    rehiredAt = Column(Text, nullable=True)

    terminationReason = Column(Text, nullable=True)
    terminatedBy = Column(String, nullable=True)
    terminatedAt = Column(Text, nullable=True, index=True)

    approvalTokenHash = Column(String, nullable=True)
    approvalTokenExpiry = Column(Text, nullable=True)
    approvalTokenUsedAt = Column(Text, nullable=True)
    approvalEmailSentAt = Column(Text, nullable=True)

    lmsUserId = Column(String, nullable=True)
    lmsCreatedAt = Column(Text, nullable=True)

    previousEmploymentJson = Column(Text, nullable=False, default="[]")

    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class OtpRecord(Base):
    __tablename__ = "otp_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)
    codeHash = Column(String, nullable=False)
    expiresAt = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    createdAt = Column(Text, nullable=False, default="", index=True)


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="")
    principalId = Column(String, nullable=False, index=True)
    principalType = Column(String, nullable=False, default="staff")
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="")
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")


class ExportToken(Base):
    __tablename__ = "export_tokens"
    __table_args__ = (UniqueConstraint("tokenHash", name="uq_export_tokens_hash"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tokenHash = Column(String, nullable=False, index=True)
    filtersJson = Column(Text, nullable=False, default="{}")
    createdBy = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="", index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="")
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="")
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="")
    actorRole = Column(String, nullable=False, default="")
    actorEmail = Column(String, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="{}")
