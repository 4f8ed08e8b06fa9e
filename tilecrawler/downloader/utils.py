# tilecrawler/downloader/utils.py

import os
from pathlib import Path
from typing import Union


def ensure_directory(directory: Union[str, Path]):
    """
    确保目录存在，不存在则创建

    Args:
        directory: 目录路径
    """
    Path(directory).mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Union[str, Path], data: bytes, fsync: bool = True):
    """
    先写临时文件再替换，避免中途崩溃留下半个文件

    Args:
        path: 目标文件
        data: 文件内容
        fsync: 替换前是否把临时文件刷到磁盘（瓦片文件不需要，位图 / 断点需要）
    """
    path = Path(path)
    ensure_directory(path.parent)
    temp_file = path.with_name(path.name + ".tmp")
    with open(temp_file, "wb") as f:
        f.write(data)
        if fsync:
            f.flush()
            os.fsync(f.fileno())
    temp_file.replace(path)
