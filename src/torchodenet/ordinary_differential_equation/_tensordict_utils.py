"""Fixed leaf layout for integrating TensorDict states as flat tensors."""

import math
from typing import Callable, List, Tuple, Union

import torch
from tensordict import TensorDict

_SEPARATOR = "."


class StateLayout:
    """
    Leaf keys, event shapes and batch size of a TensorDict template.

    States sharing the template's structure are packed into a
    ``(*batch_size, n_elements)`` tensor, leaves concatenated in sorted key
    order along the last dimension.
    """

    def __init__(self, template: TensorDict):
        self.batch_size = template.batch_size
        leaves = template.flatten_keys(_SEPARATOR)
        self.keys: List[str] = sorted(leaves.keys())
        self.event_shapes = [
            leaves[key].shape[template.batch_dims :] for key in self.keys
        ]
        self.sizes = [math.prod(shape) for shape in self.event_shapes]

    @property
    def n_elements(self) -> int:
        return sum(self.sizes)

    def flatten(self, state: TensorDict) -> torch.Tensor:
        """Pack a state laid out like the template."""
        leaves = state.flatten_keys(_SEPARATOR)
        return torch.cat(
            [leaves[key].reshape(*self.batch_size, -1) for key in self.keys],
            dim=-1,
        )

    def unflatten(self, flat: torch.Tensor) -> TensorDict:
        """
        Unpack ``flat`` of shape ``(*leading, *batch_size, n_elements)``.

        The result has ``batch_size=(*leading, *batch_size)``, so a stack of
        flat states becomes a stacked TensorDict.
        """
        leading = flat.shape[:-1]
        parts = flat.split(self.sizes, dim=-1)
        leaves = {
            key: part.reshape(*leading, *shape)
            for key, part, shape in zip(self.keys, parts, self.event_shapes)
        }
        return TensorDict(leaves, batch_size=leading).unflatten_keys(_SEPARATOR)


def flatten_state(
    y: Union[torch.Tensor, TensorDict],
) -> Tuple[
    torch.Tensor, Callable[[torch.Tensor], Union[torch.Tensor, TensorDict]]
]:
    """
    Return ``y`` as a flat tensor and the inverse mapping.

    Tensors are returned as they are, with the identity as inverse.
    """
    if isinstance(y, torch.Tensor):
        return y, lambda flat: flat

    layout = StateLayout(y)
    return layout.flatten(y), layout.unflatten
