"""기본 제공 잡 핸들러 (email, reports)"""
