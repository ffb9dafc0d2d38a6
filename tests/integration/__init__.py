"""
集成测试（integration tests）

说明：
- 该目录下的测试通过本地临时 HTTP server 模拟 Spotify Web API，
  走真实的 HttpClient / SQLite / JSONL 文件，不依赖外网。
"""
