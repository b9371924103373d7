VERSION = "0.3.0"

UPDATE_INFO = """
**更新日志**
- v0.3.0: 启动编排器状态机化
  - 启动流水线拆分为 InitState 状态机，每个阶段一个协程
  - 单实例声明支持 SQLite 跨进程存储 (UPSERT 时间戳守卫)
  - 启动失败分类与恢复动作拆分为纯函数 + 执行器
- v0.2.0: 登出数据保留规则
  - 永久设备保留 persist 标记，clear_data 时删除本账户 cookie label
  - 会话过期登出保留输入框草稿
- v0.1.0: 初始版本
"""
