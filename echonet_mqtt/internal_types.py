# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from __future__ import annotations

from typing import (
    Dict, List, Optional, Union, Any, Set, Tuple, Type, TypeVar, Callable, Awaitable,
    Iterable, Iterator, Mapping, MutableMapping, Sequence, AsyncIterator, AsyncIterable, Coroutine,
    AsyncContextManager, Deque, Literal, TYPE_CHECKING, cast,
  )
from types import TracebackType
from typing_extensions import Self

Jsonable = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
"""A type hint for a value that can be serialized to JSON"""

JsonableDict = Dict[str, Jsonable]
"""A type hint for a JSON object"""

HostAndPort = Tuple[str, int]
"""An (ip_address, port) tuple as used by the socket module"""
