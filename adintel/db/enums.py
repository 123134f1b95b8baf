from enum import Enum


class PlanEnum(str, Enum):
    free = "free"
    pro = "pro"
    enterprise = "enterprise"


class BillingStatusEnum(str, Enum):
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    canceled_downgraded = "canceled_downgraded"


class ContentCategoryEnum(str, Enum):
    text_only = "text_only"
    text_with_image = "text_with_image"
    text_with_video = "text_with_video"


class AnalysisStatusEnum(str, Enum):
    succeeded = "succeeded"
    fallback = "fallback"
    failed = "failed"


class QuotaUsageKindEnum(str, Enum):
    scrape = "scrape"
    release = "release"
    reset = "reset"
