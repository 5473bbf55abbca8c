"""napsense: personalized sleep detection from heart rate and motion stillness."""

__version__ = "0.1.0"
