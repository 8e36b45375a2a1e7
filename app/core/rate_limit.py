"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

HTTP 接口限流配置。

信令 WebSocket 本身不限流（消息要么立即转发、要么丢弃），
这里只保护房间查询类的 REST 接口。
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

# 基于客户端 IP 地址进行限流，单进程内存存储即可
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)
