"""Token 估算。

使用 tiktoken 的 cl100k_base 编码估算文本的 token 数。文本中字面出现的
<|endoftext|> 控制标记会先被剔除，既不计入用户内容，也避免估算值与真实编码长度不一致。
"""

import tiktoken

DEFAULT_ENCODING = "cl100k_base"
END_OF_TEXT = "<|endoftext|>"


class TokenEstimator:
    """无状态的 token 估算器，同一文本总是返回同一结果。"""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name
        self._encoding = tiktoken.get_encoding(encoding_name)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        text = text.replace(END_OF_TEXT, "")
        return len(self._encoding.encode(text, disallowed_special=()))
