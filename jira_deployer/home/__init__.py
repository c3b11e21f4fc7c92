from .shared_home import SharedHome, SharedHomeFormula

__all__ = ["SharedHome", "SharedHomeFormula"]
