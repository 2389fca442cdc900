"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ProviderConfig / ChatRequest / ChatResult 模型。
- history: 按 agent 隔离的对话历史存储 HistoryStore。
- exceptions: 业务异常类型定义。
"""
