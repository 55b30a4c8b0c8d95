"""
ログの色付けに使う ANSI エスケープシーケンス
"""

R = '\033[0m'       # リセット
BOLD = '\033[1m'
UL = '\033[4m'

RD = '\033[31m'     # 赤
G = '\033[32m'      # 緑
Y = '\033[33m'      # 黄
B = '\033[34m'      # 青
MG = '\033[35m'     # マゼンタ
CY = '\033[36m'     # シアン
W = '\033[37m'      # 白

BG = '\033[92m'     # 明るい緑
BY = '\033[93m'     # 明るい黄
BR = '\033[91m'     # 明るい赤

COLOR_DICT = {
    'RED': RD,
    'GREEN': G,
    'YELLOW': Y,
    'BLUE': B,
    'MAGENTA': MG,
    'CYAN': CY,
    'WHITE': W,
    'BRIGHT_GREEN': BG,
    'BRIGHT_YELLOW': BY,
    'BRIGHT_RED': BR,
    'BOLD': BOLD,
    'UNDERLINE': UL,
}

__all__ = ['R', 'BOLD', 'UL', 'RD', 'G', 'Y', 'B', 'MG', 'CY', 'W', 'BG', 'BY', 'BR', 'COLOR_DICT']
