"""CLI 模块：wabridge 命令行入口。"""
