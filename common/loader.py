"""'module.path:attribute' 형식의 경로로 객체를 가져오는 유틸리티"""

import importlib
from typing import Any


def import_string(path: str) -> Any:
    """
    'package.module:attr' 경로의 객체 반환

    Raises:
        ValueError: 경로 형식이 잘못된 경우
        ImportError: 모듈을 import 할 수 없는 경우
        AttributeError: 모듈에 속성이 없는 경우
    """
    module_path, sep, attr = path.partition(":")
    if not sep or not module_path or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")

    obj: Any = importlib.import_module(module_path)
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj
