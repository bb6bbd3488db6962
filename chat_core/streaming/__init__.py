"""Server-Sent Events 流处理：分帧 (sse) 与分发 (dispatcher)。"""
