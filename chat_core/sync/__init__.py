"""会话同步：本地缓存 (cache)、流式累加器 (accumulator) 与会话控制器 (session)。"""
