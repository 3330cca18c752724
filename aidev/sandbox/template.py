"""
Seed project written into every new workspace mirror.

A minimal Vite + React + TypeScript app whose dev server listens on the
sandbox's exposed port.
"""

import json
from typing import Dict


PACKAGE_JSON = {
    "name": "ai-dev-react-project",
    "version": "1.0.0",
    "description": "",
    "main": "index.js",
    "scripts": {
        "dev": "vite",
        "build": "tsc && vite build",
        "preview": "vite preview",
    },
    "dependencies": {
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@types/react": "^18.2.15",
        "@types/react-dom": "^18.2.7",
        "@vitejs/plugin-react": "^4.0.3",
        "typescript": "^5.0.2",
        "vite": "^4.4.5",
    },
}

TSCONFIG_JSON = {
    "compilerOptions": {
        "target": "ES2020",
        "useDefineForClassFields": True,
        "lib": ["ES2020", "DOM", "DOM.Iterable"],
        "module": "ESNext",
        "skipLibCheck": True,
        "moduleResolution": "bundler",
        "allowImportingTsExtensions": True,
        "resolveJsonModule": True,
        "isolatedModules": True,
        "noEmit": True,
        "jsx": "react-jsx",
        "strict": True,
        "noUnusedLocals": True,
        "noUnusedParameters": True,
        "noFallthroughCasesInSwitch": True,
    },
    "include": ["src"],
    "references": [{"path": "./tsconfig.node.json"}],
}

TSCONFIG_NODE_JSON = {
    "compilerOptions": {
        "composite": True,
        "skipLibCheck": True,
        "module": "ESNext",
        "moduleResolution": "bundler",
    },
    "include": ["vite.config.ts"],
}

VITE_CONFIG = """import {{ defineConfig }} from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: '0.0.0.0',
    port: {port},
    strictPort: true
  }}
}})
"""

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>AI Dev Sandbox</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>
"""

APP_TSX = """import './App.css'

function App() {
  return (
    <div className="App">
      <header className="App-header">
        <h1>Hello from AI Dev Sandbox!</h1>
        <p>Your React app is running successfully.</p>
      </header>
    </div>
  )
}

export default App
"""

MAIN_TSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.tsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')!).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
"""

APP_CSS = """.App {
  text-align: center;
}

.App-header {
  background-color: #282c34;
  padding: 20px;
  color: white;
  min-height: 100vh;
  display: flex;
  flex-direction: column;
  align-items: center;
  justify-content: center;
}
"""

INDEX_CSS = """body {
  margin: 0;
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Roboto', sans-serif;
  -webkit-font-smoothing: antialiased;
}
"""


def render_template(port: int) -> Dict[str, str]:
    """
    Build the seed project for a sandbox.

    Args:
        port: Port the Vite dev server must bind

    Returns:
        Map of relative file path to file content
    """
    return {
        "package.json": json.dumps(PACKAGE_JSON, indent=2),
        "tsconfig.json": json.dumps(TSCONFIG_JSON, indent=2),
        "tsconfig.node.json": json.dumps(TSCONFIG_NODE_JSON, indent=2),
        "vite.config.ts": VITE_CONFIG.format(port=port),
        "index.html": INDEX_HTML,
        "src/App.tsx": APP_TSX,
        "src/main.tsx": MAIN_TSX,
        "src/App.css": APP_CSS,
        "src/index.css": INDEX_CSS,
    }
