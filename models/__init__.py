from models.lifecycle import ProgressReport, InstanceClaim
from models.recovery import (
    RecoveryAction, RedirectToLogin, ReloadAfterConnectivity,
    WaitForConnectivityThenReload, ForceLogout, WaitForConnectivityThenRetryInit
)

__all__ = [
    'ProgressReport', 'InstanceClaim',
    'RecoveryAction', 'RedirectToLogin', 'ReloadAfterConnectivity',
    'WaitForConnectivityThenReload', 'ForceLogout', 'WaitForConnectivityThenRetryInit'
]
