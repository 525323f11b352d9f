import hashlib
from pathlib import Path


def calculate_hash(file_path: Path | bytes | str, buffer_size: int = 65536) -> str:
    """计算文件的 SHA256 哈希值(内存优化版,适用于大文件)

    Args:
        file_path: 文件路径；传入 bytes 时直接计算内容哈希
        buffer_size: 读取缓冲区大小,默认64KB

    Returns:
        64位小写十六进制哈希字符串

    """
    sha256 = hashlib.sha256()

    if isinstance(file_path, str):
        file_path = Path(file_path)

    if isinstance(file_path, Path):
        with file_path.open("rb") as f:
            for chunk in iter(lambda: f.read(buffer_size), b""):
                sha256.update(chunk)
    else:
        sha256.update(file_path)

    return sha256.hexdigest()

