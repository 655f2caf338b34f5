from otabridge.enums import ApiType
from otabridge.services.resource.base import ResourceService, ResourceServiceError
from otabridge.services.resource.fliggy_distribution_service import FliggyDistributionService
from otabridge.services.resource.hengdian_service import HengdianService
from otabridge.services.resource.ziwoyou_service import ZiwoyouService

SERVICE_CLASSES: dict[ApiType, type[ResourceService]] = {
    ApiType.HENGDIAN: HengdianService,
    ApiType.ZIWOYOU: ZiwoyouService,
    ApiType.FLIGGY_DISTRIBUTION: FliggyDistributionService,
}

__all__ = [
    "SERVICE_CLASSES",
    "FliggyDistributionService",
    "HengdianService",
    "ResourceService",
    "ResourceServiceError",
    "ZiwoyouService",
]
