from __future__ import annotations


class SphsError(Exception):
    """所有 sphs 异常的基类。"""


class SourceUnavailable(SphsError):
    """外部 API 拉取失败（网络/鉴权/限流/错误状态码/无法解析的响应）。"""


class MalformedCursor(SphsError):
    """分页 cursor 存在但无法解析为数值。"""


class TransformError(SphsError):
    """单条外部事件无法映射为输出记录。"""


class ConfigurationError(SphsError):
    """启动时缺失或非法的配置项，task 无法启动。"""
