"""补丁制作与更新过程中使用的异常类型"""


class PackError(Exception):
    """补丁工具基础异常类"""

    pass


class ValidationError(PackError):
    """输入校验失败异常(目录不存在、版本号非法等)"""

    pass


class PackIOError(PackError):
    """文件读写、哈希计算或压缩包创建失败异常"""

    def __init__(self, message: str, *, path: str | None = None, stage: str | None = None):
        super().__init__(message)
        self.path = path
        self.stage = stage


class EngineError(PackError):
    """差分引擎在生成签名或差分时失败"""

    def __init__(self, message: str, *, path: str | None = None, stage: str | None = None):
        super().__init__(message)
        self.path = path
        self.stage = stage


# ============================================================================
# 客户端异常
# ============================================================================


class UpdaterError(PackError):
    """更新器基础异常类"""

    pass


class ManifestError(UpdaterError):
    """清单读取或版本不匹配异常"""

    pass


class DownloadError(UpdaterError):
    """下载失败异常"""

    pass


class VerificationError(UpdaterError):
    """文件验证失败异常"""

    pass


class BackupError(UpdaterError):
    """备份操作失败异常"""

    pass


class RestoreError(UpdaterError):
    """恢复操作失败异常"""

    pass


class ApplyError(UpdaterError):
    """应用补丁失败异常"""

    pass
