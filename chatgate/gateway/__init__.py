"""入站规范化、访问策略与回复投递。"""
