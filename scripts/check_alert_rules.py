"""
Проверка Prometheus alert rules воркера синхронизации.

- каждое sync_* имя в expr должно существовать среди метрик streamix_sync.common.metrics
- опционально: promtool check rules (в контейнере)
"""

from __future__ import annotations

import argparse
import re
import subprocess
from pathlib import Path

from prometheus_client import REGISTRY

import streamix_sync.common.metrics  # noqa: F401  регистрирует метрики в REGISTRY


def _args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Validate sync alert rules")
    p.add_argument("--rules", default="ops/prometheus_alerts.yml", help="Path to rules file")
    p.add_argument("--promtool", action="store_true", help="Also run promtool in docker")
    p.add_argument(
        "--promtool-image",
        default="prom/prometheus:v2.54.1",
        help="Container image with promtool binary",
    )
    return p.parse_args()


def _known_metric_names() -> set[str]:
    names: set[str] = set()
    for family in REGISTRY.collect():
        names.add(family.name)
        # counter: семейство "x", экспортируемый ряд "x_total"
        names.add(f"{family.name}_total")
        for sample in family.samples:
            names.add(sample.name)
    return names


def _collect_expr_metrics(rules_yaml: str) -> set[str]:
    # Достаём expr без yaml-парсера, чтобы не тянуть лишние зависимости.
    out: set[str] = set()
    for expr in re.findall(r"^\s*expr:\s*(.+)$", rules_yaml, flags=re.MULTILINE):
        out.update(re.findall(r"\bsync_[a-z_]+\b", expr))
    return out


def _run_promtool_check(*, image: str, rules_path: Path) -> None:
    root = Path.cwd()
    cmd = [
        "docker",
        "run",
        "--rm",
        "--entrypoint",
        "promtool",
        "-v",
        f"{root}:/work",
        "-w",
        "/work",
        image,
        "check",
        "rules",
        str(rules_path),
    ]
    proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    if proc.returncode != 0:
        details = "\n".join(x for x in [proc.stdout.strip(), proc.stderr.strip()] if x)
        raise ValueError(f"promtool check failed:\n{details}")


def main() -> int:
    args = _args()
    rules_path = Path(args.rules)
    if not rules_path.exists():
        print(f"alert-rules-check failed: file not found: {rules_path}")
        return 2

    unknown = sorted(_collect_expr_metrics(rules_path.read_text(encoding="utf-8")) - _known_metric_names())
    if unknown:
        print("alert-rules-check failed: unknown metrics:\n" + "\n".join(f"- {m}" for m in unknown))
        return 2

    if args.promtool:
        try:
            _run_promtool_check(image=args.promtool_image, rules_path=rules_path)
        except ValueError as e:
            print(f"alert-rules-check failed: {e}")
            return 2
        except FileNotFoundError:
            print("alert-rules-check failed: docker not found")
            return 2

    print("alert-rules-check OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
