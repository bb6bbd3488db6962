"""领域层模型与协议。

包含：
- models: ChatMessage / PromptAssembly / SendMessageOptions 等数据结构。
- store: 消息存储 MessageStore 抽象。
- exceptions: 业务异常类型定义。
"""
