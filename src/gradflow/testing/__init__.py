from .gradcheck import check_gradients, numeric_gradient

__all__ = ["check_gradients", "numeric_gradient"]
