"""
STM32 CAN Loader Command-Line Interface
=======================================

This package provides the stm32-can-loader command, implemented as a
Click application in the loader module.
"""

__all__ = ["loader"]
