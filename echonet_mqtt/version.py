# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Package version; kept in step with pyproject.toml"""

__version__ = "0.3.0"

__all__ = [ '__version__' ]
