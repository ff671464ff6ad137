from typing import Optional

from gembox.core.config import load_repository_config
from gembox.domain.entities import Repository
from gembox.domain.models import RepositoryConfig

_config: Optional[RepositoryConfig] = None
_repository: Optional[Repository] = None


def get_config() -> RepositoryConfig:
    global _config
    if _config is None:
        _config = load_repository_config()
    return _config


def get_repository() -> Repository:
    global _repository
    if _repository is None:
        _repository = Repository(get_config())
    return _repository
