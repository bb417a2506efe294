from .step_00_prepare_workspace import PrepareWorkspaceStep
from .step_10_stage_filesystem import StageFilesystemStep
from .step_20_install_software import InstallSoftwareStep
from .step_30_configure_boot import ConfigureBootStep
from .step_40_assemble_image import AssembleImageStep
from .step_50_package_outputs import PackageOutputsStep

__all__ = [
    "PrepareWorkspaceStep",
    "StageFilesystemStep",
    "InstallSoftwareStep",
    "ConfigureBootStep",
    "AssembleImageStep",
    "PackageOutputsStep",
]
