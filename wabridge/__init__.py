"""
wabridge - 聊天协议会话与 HTTP 集成之间的桥接服务

模块概述：
    本文件是 wabridge 包的入口文件（__init__.py），定义了包的元信息。
    wabridge 维护一条始终在线的已认证聊天协议会话（由外部桥接进程提供），
    并把入站消息转换为 Webhook 投递、把会话状态推送到仪表盘。

    整个框架的核心功能包括：
    - 会话生命周期管理（配对、打开、关闭、重连）
    - 凭据目录的备份、恢复与损坏处理
    - 入站消息去重与相册聚合
    - 周期性健康检查与僵尸会话检测
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🌉"
