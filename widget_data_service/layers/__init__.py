"""
数据流分层架构
  Layer 1 – Acquisition  : 数据项获取（JSON / HTTP / WebSocket / 脚本）
  Layer 2 – Processing   : 路径过滤、自定义脚本、默认值
  Layer 3 – Merging      : 数据项合并为数据源结果
  Layer 4 – Integration  : 多数据源整合为组件数据
  Layer 5 – Cache        : 组件数据仓库（版本控制 + TTL + 订阅）
"""
