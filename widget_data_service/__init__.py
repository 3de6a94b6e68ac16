"""
看板组件数据服务
为仪表盘组件提供实时数据：获取、处理、合并、整合多种数据源（静态 JSON / HTTP / 脚本）

架构分层：
  数据获取层 (Acquisition)  → 按数据项类型拉取原始数据，解析动态参数绑定，HTTP 请求去重
  处理层     (Processing)   → 路径过滤 + 自定义脚本转换
  合并层     (Merging)      → 按合并策略把同一数据源的多个数据项合成一个值
  整合层     (Integration)  → 把组件的多个数据源按 sourceId 整合为 ComponentData
  缓存层     (Cache)        → 组件级数据仓库（TTL / 版本控制 / 内存淘汰）
"""

__version__ = "1.0.0"
