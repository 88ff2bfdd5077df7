# === FILE: site_diff/config.py ===
"""
Модуль для загрузки и валидации конфигурации SiteDiff.
Используется Pydantic для описания схемы и проверки данных.
"""
from __future__ import annotations

import errno
import json
import os
import re
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    field_validator,
    model_validator,
)

_CPU_COUNT = os.cpu_count() or 1


class DiffConfig(BaseModel):
    """Конфигурация для одного запуска визуального сравнения."""
    model_config = ConfigDict(extra="forbid", frozen=True, validate_default=True)

    sitemap_url: Optional[HttpUrl] = Field(None, description="Корневой sitemap (или sitemap index).")
    preview_domain: Optional[str] = Field(
        None, description="Домен или origin превью, с которым сравнивается продакшен."
    )

    capture_endpoint: HttpUrl = Field(
        "http://localhost:3000", description="Адрес сервиса скриншотов (browserless-совместимый)."
    )
    capture_token: Optional[str] = Field(None, description="Токен сервиса скриншотов.")
    viewport_width: int = Field(1700, ge=1)
    viewport_height: int = Field(2000, ge=1)

    capture_concurrency: int = Field(min(20, 4 * _CPU_COUNT), ge=1, description="Параллельные захваты.")
    compare_concurrency: int = Field(max(1, _CPU_COUNT // 2), ge=1, description="Параллельные сравнения.")
    file_io_concurrency: int = Field(8, ge=1, description="Параллельные операции с файлами.")

    timeout: float = Field(30.0, gt=0, description="Таймаут на один запрос (секунд).")
    retries: int = Field(2, ge=0, description="Число повторных попыток.")
    retry_base_delay: float = Field(1.0, gt=0, description="Базовая задержка между попытками (секунд).")
    retry_max_delay: float = Field(30.0, gt=0)
    retry_multiplier: float = Field(2.0, ge=1)
    retry_jitter: bool = True

    cache_enabled: bool = True
    cache_dir: Path = Path(".site_diff_cache")
    cache_ttl: float = Field(24 * 3600.0, gt=0, description="Срок свежести кэша (секунд).")
    cache_cleanup_age: float = Field(7 * 24 * 3600.0, gt=0, description="Возраст удаления из кэша (секунд).")

    max_urls: Optional[int] = Field(None, ge=1, description="Жесткий лимит по числу URL.")
    max_nested_depth: int = Field(8, ge=0, description="Максимальная вложенность sitemap index.")
    follow_nested_sitemaps: bool = True
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)

    output_dir: Path = Path("visual-testing")
    run_name: Optional[str] = None
    allow_resize: bool = True
    cancel_grace_period: float = Field(10.0, ge=0)

    base_branch: str = Field("main", min_length=1)
    branch_settle_delay: float = Field(2.0, ge=0)

    @field_validator("preview_domain", mode="before")
    def _strip_trailing_slash(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().rstrip("/")
            return v or None
        return v

    @field_validator("include_patterns", "exclude_patterns")
    def _check_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc
        return v

    @model_validator(mode="after")
    def _check_ranges(self) -> DiffConfig:
        if self.cache_cleanup_age < self.cache_ttl:
            raise ValueError("cache_cleanup_age must be >= cache_ttl")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self

    def with_overrides(self, **overrides: Any) -> DiffConfig:
        """Возвращает новую проверенную конфигурацию; значения None игнорируются."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return DiffConfig(**data)


DEFAULT_CONFIG_PATH = Path("configs/default.yaml")

# suffix -> (название формата, парсер, его исключение)
_PARSERS: dict[str, tuple[str, Callable[[str], Any], type[Exception]]] = {
    ".yaml": ("YAML", yaml.safe_load, yaml.YAMLError),
    ".yml": ("YAML", yaml.safe_load, yaml.YAMLError),
    ".json": ("JSON", json.loads, json.JSONDecodeError),
}


def read_mapping(path: Path) -> dict[str, Any]:
    """Разбирает YAML/JSON файл; верхний уровень обязан быть mapping."""
    try:
        fmt, parse, parse_error = _PARSERS[path.suffix.lower()]
    except KeyError:
        raise ValueError(f"Неподдерживаемый формат конфига: {path.suffix.lower()}") from None

    try:
        data = parse(path.read_text(encoding="utf-8")) or {}
    except parse_error as exc:
        raise ValueError(f"Неправильный {fmt} в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень {fmt} должен быть mapping, получено {type(data).__name__}")
    return data


def load_config(path: Union[str, Path, None]) -> DiffConfig:
    """
    Читает YAML или JSON и возвращает проверенный объект DiffConfig.
    Без `path` берётся configs/default.yaml; для отсутствующего файла FileNotFoundError,
    ошибки схемы пробрасываются как pydantic.ValidationError.
    """
    source = DEFAULT_CONFIG_PATH if path is None else Path(path).expanduser().resolve()
    if not source.is_file():
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(source))
    return DiffConfig(**read_mapping(source))


__all__ = ["DEFAULT_CONFIG_PATH", "DiffConfig", "load_config", "read_mapping"]
