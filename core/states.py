from enum import Enum
from typing import Dict, Set


class InitState(str, Enum):
    NOT_STARTED = "not_started"
    CHECKING_STORAGE = "checking_storage"
    REGISTERING_INSTANCE = "registering_instance"
    LOADING_TOKEN = "loading_token"
    LOADING_SELF_USER = "loading_self_user"
    VALIDATING_CLIENT = "validating_client"
    INITIALIZING_CRYPTO = "initializing_crypto"
    CONNECTING_STREAM = "connecting_stream"
    LOADING_CONVERSATIONS = "loading_conversations"
    LOADING_TEAM = "loading_team"
    LOADING_USERS = "loading_users"
    REPLAYING_NOTIFICATIONS = "replaying_notifications"
    INITIALIZING_CONVERSATIONS = "initializing_conversations"
    UPDATING_CLIENTS = "updating_clients"
    SHOWING_INTERFACE = "showing_interface"
    FULLY_LOADED = "fully_loaded"
    FAILED = "failed"              # 吸收态，只能通过新的编排器 (重新加载) 离开


# 启动流水线的严格顺序
PIPELINE_ORDER = [
    InitState.NOT_STARTED,
    InitState.CHECKING_STORAGE,
    InitState.REGISTERING_INSTANCE,
    InitState.LOADING_TOKEN,
    InitState.LOADING_SELF_USER,
    InitState.VALIDATING_CLIENT,
    InitState.INITIALIZING_CRYPTO,
    InitState.CONNECTING_STREAM,
    InitState.LOADING_CONVERSATIONS,
    InitState.LOADING_TEAM,
    InitState.LOADING_USERS,
    InitState.REPLAYING_NOTIFICATIONS,
    InitState.INITIALIZING_CONVERSATIONS,
    InitState.UPDATING_CLIENTS,
    InitState.SHOWING_INTERFACE,
    InitState.FULLY_LOADED,
]

TERMINAL_STATES = {InitState.FULLY_LOADED, InitState.FAILED}


def _build_transitions() -> Dict[InitState, Set[InitState]]:
    transitions: Dict[InitState, Set[InitState]] = {}
    for current, following in zip(PIPELINE_ORDER, PIPELINE_ORDER[1:]):
        transitions[current] = {following, InitState.FAILED}
    for terminal in TERMINAL_STATES:
        transitions[terminal] = set()
    return transitions


# 状态流转矩阵：只允许前进到下一个阶段，或进入 FAILED
VALID_TRANSITIONS = _build_transitions()


def validate_transition(current: str, new: str) -> bool:
    """
    验证状态转换是否合法

    Args:
        current: 当前状态
        new: 目标状态

    Returns:
        bool: 转换是否合法
    """
    try:
        current_state = InitState(current)
        new_state = InitState(new)
    except ValueError:
        return False
    return new_state in VALID_TRANSITIONS[current_state]
