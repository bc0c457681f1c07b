from .step_10_plan_layout import PlanLayoutStep
from .step_20_partition_image import PartitionImageStep
from .step_30_mount_target import MountTargetStep
from .step_40_bootstrap import BootstrapStep
from .step_50_install_packages import InstallPackagesStep
from .step_60_install_appliance import InstallApplianceStep
from .step_70_boot_transform import BootTransformStep
from .step_80_install_bootloader import InstallBootloaderStep
from .step_90_package_image import PackageImageStep

__all__ = [
    "PlanLayoutStep",
    "PartitionImageStep",
    "MountTargetStep",
    "BootstrapStep",
    "InstallPackagesStep",
    "InstallApplianceStep",
    "BootTransformStep",
    "InstallBootloaderStep",
    "PackageImageStep",
]
