from .base import Action
from .configure import ConfigureAction
from .deploy import DeployAction
from .install import InstallAction
from .service import RestartAction, StopAction
from .teardown import TeardownAction
from ..types import ActionKind

ACTION_REGISTRY: dict[ActionKind, type[Action]] = {
    ActionKind.INSTALL: InstallAction,
    ActionKind.CONFIGURE: ConfigureAction,
    ActionKind.DEPLOY: DeployAction,
    ActionKind.RESTART: RestartAction,
    ActionKind.STOP: StopAction,
    ActionKind.TEARDOWN: TeardownAction,
}

__all__ = [
    "Action",
    "InstallAction",
    "ConfigureAction",
    "DeployAction",
    "RestartAction",
    "StopAction",
    "TeardownAction",
    "ACTION_REGISTRY",
]
