"""
命令行入口

    delta-pack --old build/1.0.0 --new build/1.0.1 --out dist --base-version 1.0.0 --new-version 1.0.1 --exclude "**/cache/**"

未在命令行指定的参数从配置文件(默认 appsettings.json)读取。成功返回 0，失败返回 1。
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import SETTINGS_FILE, load_config
from .errors import PackError
from .packager import PatchPackager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="delta-pack", description="比较新旧两个版本目录，生成增量更新包与更新清单")
    parser.add_argument("--config", type=Path, default=Path(SETTINGS_FILE), help="配置文件路径 (默认: %(default)s)")
    parser.add_argument("--old", dest="old_dir", type=Path, help="旧版本目录")
    parser.add_argument("--new", dest="new_dir", type=Path, help="新版本目录")
    parser.add_argument("--out", dest="out_dir", type=Path, help="输出目录")
    parser.add_argument("--base-version", help="基础版本号，例如 1.2.3")
    parser.add_argument("--new-version", dest="version", help="新版本号，例如 1.2.4")
    parser.add_argument("--exclude", dest="exclude_globs", action="append", help="排除模式，可重复指定")
    parser.add_argument("--exclude-mode", choices=("substring", "gitignore"), help="排除模式的匹配方式")
    parser.add_argument("--mandatory", action="store_true", default=None, help="标记为强制更新")
    parser.add_argument("--manifest-name", help="清单文件名")
    parser.add_argument("--workers", type=int, help="并行线程数")
    parser.add_argument("--split-size", type=int, help="单个差分压缩包的最大数据量(字节)")
    parser.add_argument("--block-size", type=int, help="差分引擎块大小(字节)")
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"), help="日志级别")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log_level = getattr(logging, args.log_level)

    try:
        config = load_config(args.config)

        # 命令行参数覆盖配置文件
        for name in ("old_dir", "new_dir", "out_dir", "base_version", "version", "exclude_globs", "exclude_mode", "mandatory", "manifest_name", "workers", "split_size", "block_size"):
            value = getattr(args, name)
            if value is not None:
                setattr(config, name, value)

        config.validate()

        packager = PatchPackager(config, log_level=log_level)
        packager.run()

    except PackError as e:
        logging.getLogger("delta-pack").error(f"✗ 补丁制作失败: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
