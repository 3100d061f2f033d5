"""
ModSync - 游戏服务器模组同步工具

跨 Modrinth、CurseForge 与 GitHub Releases 解析模组依赖，
并以可复现、可回滚的方式安装到服务器的模组目录。
"""

from modsync.exceptions import ModSyncError
from modsync.orchestrator import ModSyncOrchestrator

__version__ = "0.1.0"

__all__ = ["ModSyncError", "ModSyncOrchestrator", "__version__"]
