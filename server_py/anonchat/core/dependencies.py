from anonchat.services.session import ChatCoordinator
from anonchat.services.sweeper import LivenessSweeper

# Единственный координатор процесса: реестр соединений и пул живут в нем
coordinator = ChatCoordinator()
sweeper = LivenessSweeper(coordinator)


def get_coordinator() -> ChatCoordinator:
    """Dependency для эндпоинтов и вебсокета, подменяется в тестах."""
    return coordinator


def get_sweeper() -> LivenessSweeper:
    return sweeper
