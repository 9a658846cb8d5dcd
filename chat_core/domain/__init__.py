"""领域层模型与协议。

包含：
- models: Message / TransportEvent / ConnectionState 等共享模型。
- cache: 本地缓存使用的键值存储协议。
- exceptions: 业务异常类型定义。
"""
