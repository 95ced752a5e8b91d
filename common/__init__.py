"""공통 유틸리티 (모델, 설정, 로깅)"""
