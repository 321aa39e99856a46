from .grad import GradientBinding, build_gradients, differentiate

__all__ = ["GradientBinding", "build_gradients", "differentiate"]
