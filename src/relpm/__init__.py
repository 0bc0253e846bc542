from ._version import __version__
from .deploy import DeploymentEngine, OperationResult
from .errors import ErrorKind, RelpmError
from .slots import Selector

__all__ = ["DeploymentEngine", "ErrorKind", "OperationResult", "RelpmError", "Selector", "__version__"]
