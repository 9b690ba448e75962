#!/usr/bin/env python3
"""
Configuration Manager for the scan engine

Manages analyzer settings, size limits and result cache settings.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, field

from rich.console import Console

from core.analysis_cache import CACHE_BACKENDS, ResultCache, create_cache_backend
from core.static_analyzers import available_analyzers


@dataclass
class AnalyzerConfig:
    """Configuration for a single analyzer strategy."""
    name: str
    enabled: bool = True
    timeout: Optional[float] = None  # falls back to ScanConfig.analyzer_timeout


def _default_analyzers() -> Dict[str, AnalyzerConfig]:
    return {name: AnalyzerConfig(name) for name in available_analyzers()}


@dataclass
class ScanConfig:
    """Main configuration for the scan engine."""

    # Input limits
    max_source_bytes: int = 100_000

    # Analyzer settings
    analyzer_timeout: float = 30.0
    context_window: int = 4
    analyzers: Dict[str, AnalyzerConfig] = field(default_factory=_default_analyzers)

    # Result cache settings
    cache_enabled: bool = True
    cache_backend: str = "memory"  # memory, file, sqlite
    cache_dir: str = "~/.scancore/cache"
    cache_ttl_seconds: int = 3600

    def enabled_analyzers(self) -> List[str]:
        return [name for name, cfg in self.analyzers.items() if cfg.enabled]

    def timeout_for(self, analyzer_name: str) -> float:
        cfg = self.analyzers.get(analyzer_name)
        if cfg is not None and cfg.timeout:
            return float(cfg.timeout)
        return float(self.analyzer_timeout)

    def get_cache_path(self) -> Path:
        """Get cache directory as Path object."""
        return Path(self.cache_dir).expanduser().resolve()

    def build_cache(self) -> Optional[ResultCache]:
        """Result cache described by these settings, or None when caching is off."""
        if not self.cache_enabled:
            return None
        cache_dir = self.get_cache_path() if self.cache_backend != 'memory' else None
        backend = create_cache_backend(self.cache_backend, cache_dir)
        return ResultCache(backend, ttl_seconds=self.cache_ttl_seconds)


_POSITIVE_INTS = ('max_source_bytes', 'context_window', 'cache_ttl_seconds')
_POSITIVE_FLOATS = ('analyzer_timeout',)


class ConfigManager:
    """Loads, validates and saves ScanConfig as YAML."""

    def __init__(self, config_file: str = "~/.scancore/config.yaml", console: Optional[Console] = None):
        self.config_file = Path(config_file).expanduser()
        self.console = console or Console()
        self.config = ScanConfig()

        # Ensure config directory exists
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        self.load_config()

    def load_config(self) -> None:
        """Load configuration from file; invalid values are reported and skipped."""
        if not self.config_file.exists():
            return
        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.console.print(f"[yellow]Warning: Could not load config file: {e}[/yellow]")
            return

        if not data:
            return
        if not isinstance(data, dict):
            self.console.print("[yellow]Warning: Config file must contain a mapping, using defaults[/yellow]")
            return

        for key, value in data.items():
            if not hasattr(self.config, key):
                continue
            if key == 'analyzers':
                self._load_analyzers(value)
            elif self._is_valid(key, value):
                setattr(self.config, key, value)
            else:
                self.console.print(
                    f"[yellow]Warning: Invalid value for {key}: {value!r}, "
                    f"keeping {getattr(self.config, key)!r}[/yellow]"
                )

    def _is_valid(self, key: str, value: Any) -> bool:
        if key in _POSITIVE_INTS:
            return isinstance(value, int) and not isinstance(value, bool) and value > 0
        if key in _POSITIVE_FLOATS:
            return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
        if key == 'cache_enabled':
            return isinstance(value, bool)
        if key == 'cache_backend':
            return value in CACHE_BACKENDS
        if key == 'cache_dir':
            return isinstance(value, str) and bool(value)
        return True

    def _load_analyzers(self, value: Any) -> None:
        if not isinstance(value, dict):
            self.console.print("[yellow]Warning: 'analyzers' must be a mapping, keeping defaults[/yellow]")
            return

        for analyzer_name, analyzer_data in value.items():
            if analyzer_name not in self.config.analyzers:
                self.console.print(f"[yellow]Warning: Unknown analyzer in config: {analyzer_name}[/yellow]")
                continue
            if isinstance(analyzer_data, dict):
                # Remove 'name' from analyzer_data if it exists to avoid duplicate argument
                analyzer_data_copy = analyzer_data.copy()
                analyzer_data_copy.pop('name', None)
                try:
                    self.config.analyzers[analyzer_name] = AnalyzerConfig(name=analyzer_name, **analyzer_data_copy)
                except TypeError as e:
                    self.console.print(f"[yellow]Warning: Invalid settings for {analyzer_name}: {e}[/yellow]")
            else:
                self.config.analyzers[analyzer_name] = AnalyzerConfig(analyzer_name, enabled=bool(analyzer_data))

    def save_config(self) -> None:
        """Save current configuration to file."""
        try:
            config_dict = asdict(self.config)
            with open(self.config_file, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)

            self.console.print(f"[green]✓ Configuration saved to {self.config_file}[/green]")

        except (OSError, yaml.YAMLError) as e:
            self.console.print(f"[red]✗ Failed to save config: {e}[/red]")

    def get_analyzer_config(self, analyzer_name: str) -> Optional[AnalyzerConfig]:
        return self.config.analyzers.get(analyzer_name)

    def enable_analyzer(self, analyzer_name: str) -> bool:
        """Enable a specific analyzer."""
        if analyzer_name in self.config.analyzers:
            self.config.analyzers[analyzer_name].enabled = True
            self.console.print(f"[green]✓ Enabled {analyzer_name}[/green]")
            return True
        self.console.print(f"[red]✗ Unknown analyzer: {analyzer_name}[/red]")
        return False

    def disable_analyzer(self, analyzer_name: str) -> bool:
        """Disable a specific analyzer."""
        if analyzer_name in self.config.analyzers:
            self.config.analyzers[analyzer_name].enabled = False
            self.console.print(f"[yellow]⚠ Disabled {analyzer_name}[/yellow]")
            return True
        self.console.print(f"[red]✗ Unknown analyzer: {analyzer_name}[/red]")
        return False

    def enabled_analyzers(self) -> List[str]:
        return self.config.enabled_analyzers()

    def build_cache(self) -> Optional[ResultCache]:
        """Result cache described by the configuration, or None when caching is off."""
        return self.config.build_cache()

    def get_cache_path(self) -> Path:
        """Get cache directory as Path object."""
        return self.config.get_cache_path()

    def show_config(self) -> None:
        """Display current configuration."""
        from rich.table import Table

        main_table = Table(title="Scan Configuration")
        main_table.add_column("Setting", style="cyan")
        main_table.add_column("Value", style="green")

        main_table.add_row("Max Source Size", f"{self.config.max_source_bytes} bytes")
        main_table.add_row("Analyzer Timeout", f"{self.config.analyzer_timeout}s")
        main_table.add_row("Context Window", f"{self.config.context_window} lines")
        main_table.add_row("Cache", "Yes" if self.config.cache_enabled else "No")
        main_table.add_row("Cache Backend", self.config.cache_backend)
        main_table.add_row("Cache Directory", self.config.cache_dir)
        main_table.add_row("Cache TTL", f"{self.config.cache_ttl_seconds}s")

        self.console.print(main_table)

        analyzers_table = Table(title="Analyzer Configuration")
        analyzers_table.add_column("Analyzer", style="cyan")
        analyzers_table.add_column("Enabled", style="green")
        analyzers_table.add_column("Timeout", style="yellow")

        for analyzer_name, analyzer_config in self.config.analyzers.items():
            enabled = "Yes" if analyzer_config.enabled else "No"
            timeout = f"{self.config.timeout_for(analyzer_name)}s"
            analyzers_table.add_row(analyzer_name, enabled, timeout)

        self.console.print(analyzers_table)

        self.console.print(f"\n[bold cyan]Config File:[/bold cyan] {self.config_file}")
