"""crowdtag: 歩行者軌跡リプレイからアンカー単位のタグ付きデータセットを生成する。"""
