# Made by trex099
# https://github.com/Trex099/Glint
"""
cloudvm: lifecycle management for local QEMU VMs booted from distribution
cloud images, provisioned with a cloud-init seed.
"""

__version__ = "1.0.0"

from .error_handling import (
    VMError, ErrorSeverity, ErrorCategory, get_error_handler,
    ValidationError, NotFoundError, ImageMissing, PortInUse,
    DownloadFailed, SeedGenerationFailed, ResizeFailed, ProcessError
)
from .vm_record import VMRecord, PortForward
from .validation import validate
from .config_store import ConfigStore
from .provisioner import ImageProvisioner
from .session_manager import ProcessSupervisor, SessionInfo
from .lifecycle import LifecycleController

__all__ = [
    '__version__',
    # Error handling exports
    'VMError', 'ErrorSeverity', 'ErrorCategory', 'get_error_handler',
    'ValidationError', 'NotFoundError', 'ImageMissing', 'PortInUse',
    'DownloadFailed', 'SeedGenerationFailed', 'ResizeFailed', 'ProcessError',
    # Core components
    'VMRecord', 'PortForward', 'validate',
    'ConfigStore', 'ImageProvisioner', 'ProcessSupervisor', 'SessionInfo',
    'LifecycleController',
]
