"""
zcoder
~~~~~~

ZCoder 协作编程后端 —— 多人实时共享代码房间引擎。
"""
