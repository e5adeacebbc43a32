"""
Robust loss functions

Each loss maps the squared residual norm s = |r|^2 to [rho(s), rho'(s)].
Observations are reweighted by sqrt(rho'(s)) on both the residual and its
Jacobian, so large residuals contribute linearly (Huber) or logarithmically
(Cauchy) instead of quadratically. The total cost is 0.5 * sum(rho(s)).
"""

import numpy as np

# rho' is floored so the reweighting never divides by zero downstream
_MIN_WEIGHT = np.finfo(np.float64).eps


class RobustLoss:
    """Base class: rho(s) = s"""

    name = "trivial"

    def __init__(self, scale: float = 1.0):
        if scale <= 0.0:
            raise ValueError(f"Loss scale must be positive, got {scale}")
        self.scale = float(scale)

    def evaluate(self, squared_norms: np.ndarray) -> np.ndarray:
        """Return an (N, 2) array of [rho, rho']"""
        s = np.asarray(squared_norms, dtype=np.float64)
        rho = np.empty(s.shape + (2,))
        rho[..., 0] = s
        rho[..., 1] = 1.0
        return rho

    def weights(self, squared_norms: np.ndarray) -> np.ndarray:
        """Effective IRLS weights rho'(s)"""
        return self.evaluate(squared_norms)[..., 1]

    def cost(self, squared_norms: np.ndarray) -> float:
        """0.5 * sum(rho(s))"""
        return 0.5 * float(np.sum(self.evaluate(squared_norms)[..., 0]))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(scale={self.scale})"


class TrivialLoss(RobustLoss):
    """Plain least squares"""


class HuberLoss(RobustLoss):
    """rho(s) = s for s <= delta^2, 2 delta sqrt(s) - delta^2 otherwise"""

    name = "huber"

    def evaluate(self, squared_norms: np.ndarray) -> np.ndarray:
        s = np.asarray(squared_norms, dtype=np.float64)
        b = self.scale * self.scale
        outlier = s > b
        r = np.sqrt(np.where(outlier, s, 1.0))

        rho = np.empty(s.shape + (2,))
        rho[..., 0] = np.where(outlier, 2.0 * self.scale * r - b, s)
        rho[..., 1] = np.where(outlier, np.maximum(_MIN_WEIGHT, self.scale / r), 1.0)
        return rho


class CauchyLoss(RobustLoss):
    """rho(s) = b log(1 + s / b)"""

    name = "cauchy"

    def evaluate(self, squared_norms: np.ndarray) -> np.ndarray:
        s = np.asarray(squared_norms, dtype=np.float64)
        b = self.scale * self.scale
        c = 1.0 / b
        total = 1.0 + s * c
        inv = 1.0 / total

        rho = np.empty(s.shape + (2,))
        rho[..., 0] = b * np.log1p(s * c)
        rho[..., 1] = np.maximum(_MIN_WEIGHT, inv)
        return rho


class SoftL1Loss(RobustLoss):
    """rho(s) = 2 b (sqrt(1 + s / b) - 1)"""

    name = "soft_l1"

    def evaluate(self, squared_norms: np.ndarray) -> np.ndarray:
        s = np.asarray(squared_norms, dtype=np.float64)
        b = self.scale * self.scale
        c = 1.0 / b
        total = 1.0 + s * c
        tmp = np.sqrt(total)

        rho = np.empty(s.shape + (2,))
        rho[..., 0] = 2.0 * b * (tmp - 1.0)
        rho[..., 1] = np.maximum(_MIN_WEIGHT, 1.0 / tmp)
        return rho


_LOSSES = {
    "trivial": TrivialLoss,
    "huber": HuberLoss,
    "cauchy": CauchyLoss,
    "soft_l1": SoftL1Loss,
}


def create_loss(name: str, scale: float = 1.0) -> RobustLoss:
    """Create a loss by name ("trivial", "huber", "cauchy", "soft_l1")"""
    try:
        loss_cls = _LOSSES[name]
    except KeyError:
        raise ValueError(f"Unknown loss function: {name}") from None
    return loss_cls(scale)
