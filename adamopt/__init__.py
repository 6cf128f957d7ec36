__version__ = "0.1.0"

from .adam import Adam, adam
from .graph import Node, NodeOutput, SummedTensorArrayMap, TensorArrayMap, VariableNode, scaled_array_add
from .optimizer import Optimizer
from .variables import MissingVariableError, ParameterHandle, ShapeMismatchError, VariableStore
