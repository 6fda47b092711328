"""chore-bot: coordinate code-quality agents around an issue tracker."""

__version__ = "0.1.0"

__all__ = ["__version__"]
