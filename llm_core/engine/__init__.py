"""对话执行层：分发、异步句柄、模板与受限选择。"""
